"""Stock ledger: ingredients, batches, movements, processed deductions

Revision ID: 20261019_stock_ledger
Revises:
Create Date: 2026-10-19

This migration adds:
1. ingredients (aggregate stock + thresholds, version_id optimistic lock)
2. stock_batches (per-batch cost/expiry, remaining <= initial check)
3. stock_movements (append-only ledger, stock_before/stock_after snapshot)
4. processed_deductions (reference + ingredient idempotency pairs)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_stock_ledger'
down_revision = None
branch_labels = None
depends_on = None


BATCH_STATUSES = ('active', 'consumed', 'expired')
MOVEMENT_TYPES = ('stock_in', 'stock_out', 'waste', 'adjustment')
REFERENCE_TYPES = ('order', 'purchase', 'manual', 'waste', 'reconciliation', 'reversal', 'expiry')


def upgrade():
    # ==========================================================================
    # 1. INGREDIENTS
    # ==========================================================================
    op.create_table('ingredients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('unit', sa.String(length=20), nullable=False),
        sa.Column('current_stock', sa.Numeric(12, 3), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Numeric(12, 3), nullable=False, server_default='0'),
        sa.Column('max_stock', sa.Numeric(12, 3), nullable=False, server_default='0'),
        sa.Column('cost_per_unit', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_ingredients_name'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('ingredients', schema=None) as batch_op:
        batch_op.create_index('ix_ingredients_active_name', ['is_active', 'name'], unique=False)

    # ==========================================================================
    # 2. STOCK BATCHES
    # ==========================================================================
    op.create_table('stock_batches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ingredient_id', sa.Integer(), nullable=False),
        sa.Column('batch_number', sa.String(length=50), nullable=False),
        sa.Column('initial_quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('remaining_quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('cost_per_unit', sa.Numeric(12, 2), nullable=False),
        sa.Column('received_date', sa.Date(), nullable=False),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('status', sa.Enum(*BATCH_STATUSES, name='batchstatus', native_enum=False, length=16), nullable=False),
        sa.Column('supplier_name', sa.String(length=100), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('remaining_quantity >= 0 AND remaining_quantity <= initial_quantity', name='ck_stock_batches_remaining'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('ingredient_id', 'batch_number', name='uq_stock_batches_ingredient_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_batches', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stock_batches_ingredient_id'), ['ingredient_id'], unique=False)
        batch_op.create_index('ix_stock_batches_fifo', ['ingredient_id', 'received_date', 'id'], unique=False)
        batch_op.create_index('ix_stock_batches_expiry', ['expiry_date'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_batches_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_batches_reference'), ['reference'], unique=False)

    # ==========================================================================
    # 3. STOCK MOVEMENTS (append-only)
    # ==========================================================================
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ingredient_id', sa.Integer(), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('movement_type', sa.Enum(*MOVEMENT_TYPES, name='movementtype', native_enum=False, length=16), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_cost', sa.Numeric(14, 2), nullable=False),
        sa.Column('stock_before', sa.Numeric(12, 3), nullable=True),
        sa.Column('stock_after', sa.Numeric(12, 3), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('reference_type', sa.Enum(*REFERENCE_TYPES, name='referencetype', native_enum=False, length=24), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('performed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_stock_movements_quantity_positive'),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id'], ),
        sa.ForeignKeyConstraint(['batch_id'], ['stock_batches.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stock_movements_ingredient_id'), ['ingredient_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_batch_id'), ['batch_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_movement_type'), ['movement_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_reference_type'), ['reference_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_stock_movements_ingredient_created', ['ingredient_id', 'created_at'], unique=False)
        batch_op.create_index('ix_stock_movements_reference', ['reference', 'movement_type'], unique=False)

    # ==========================================================================
    # 4. PROCESSED DEDUCTIONS (idempotency)
    # ==========================================================================
    op.create_table('processed_deductions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=False),
        sa.Column('ingredient_id', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.Enum(*REFERENCE_TYPES, name='referencetype', native_enum=False, length=24), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['ingredient_id'], ['ingredients.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference', 'ingredient_id', name='uq_processed_deductions_reference_ingredient'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('processed_deductions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_processed_deductions_reference'), ['reference'], unique=False)


def downgrade():
    with op.batch_alter_table('processed_deductions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_processed_deductions_reference'))
    op.drop_table('processed_deductions')

    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.drop_index('ix_stock_movements_reference')
        batch_op.drop_index('ix_stock_movements_ingredient_created')
        batch_op.drop_index(batch_op.f('ix_stock_movements_created_at'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_reference_type'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_movement_type'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_batch_id'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_ingredient_id'))
    op.drop_table('stock_movements')

    with op.batch_alter_table('stock_batches', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_stock_batches_reference'))
        batch_op.drop_index(batch_op.f('ix_stock_batches_status'))
        batch_op.drop_index('ix_stock_batches_expiry')
        batch_op.drop_index('ix_stock_batches_fifo')
        batch_op.drop_index(batch_op.f('ix_stock_batches_ingredient_id'))
    op.drop_table('stock_batches')

    with op.batch_alter_table('ingredients', schema=None) as batch_op:
        batch_op.drop_index('ix_ingredients_active_name')
    op.drop_table('ingredients')
