"""
Pytest fixtures for stock ledger tests.

Provides the Flask app on SQLite in-memory, a clean database per test, and
stock services over either repository implementation.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from stockledger import create_app
from stockledger.errors import PersistenceError
from stockledger.extensions import db
from stockledger.services import build_stock_services
from stockledger.services.memory_repository import InMemoryStockRepository
from stockledger.services.repository import SqlAlchemyStockRepository
from stockledger.time_utils import utc_today


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'STOCK_RETRY_ATTEMPTS': 3,
    'STOCK_RETRY_BACKOFF': 0,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(params=['memory', 'sql'])
def repo(request):
    """Run the test against both repository implementations."""
    if request.param == 'memory':
        return InMemoryStockRepository()
    session = request.getfixturevalue('db_session')
    return SqlAlchemyStockRepository(session, attempts=3, backoff=0)


@pytest.fixture
def memory_repo():
    return InMemoryStockRepository()


@pytest.fixture
def stock(repo):
    """All stock services wired around the parametrized repository."""
    return build_stock_services(repo, TEST_CONFIG)


@pytest.fixture
def days_ago():
    def _days_ago(days: int):
        return utc_today() - timedelta(days=days)
    return _days_ago


@pytest.fixture
def make_ingredient(stock):
    """Factory: create an ingredient, optionally with batches [(qty, cost, age_days, expiry)]."""
    def _make(name='Milk', unit='liter', min_stock='0', max_stock='0', cost_per_unit='0', batches=()):
        ingredient = stock.ingredients.create({
            'name': name,
            'unit': unit,
            'min_stock': min_stock,
            'max_stock': max_stock,
            'cost_per_unit': cost_per_unit,
        })
        for index, row in enumerate(batches):
            quantity, cost, age_days = row[0], row[1], row[2]
            expiry = row[3] if len(row) > 3 else None
            stock.receiving.receive(
                ingredient.id,
                quantity,
                unit_cost=cost,
                received_date=utc_today() - timedelta(days=age_days),
                expiry_date=expiry,
                batch_number=f'B{index + 1}',
            )
        return ingredient
    return _make


def batch_remainders(repo, ingredient_id):
    return {b.batch_number: b.remaining_quantity for b in repo.list_batches(ingredient_id)}


def assert_invariant(repo, ingredient_id):
    ingredient = repo.get_ingredient(ingredient_id)
    total = sum((b.remaining_quantity for b in repo.list_batches(ingredient_id)), Decimal('0'))
    assert ingredient.current_stock == total


class OutageRepository(InMemoryStockRepository):
    """Memory repository whose transactions fail for the ingredients in `down`."""

    def __init__(self, error=None):
        super().__init__()
        self.down = set()
        self.error = error or PersistenceError('database unavailable')

    def run_locked(self, ingredient_ids, op):
        if self.down & {int(i) for i in ingredient_ids}:
            raise self.error
        return super().run_locked(ingredient_ids, op)
