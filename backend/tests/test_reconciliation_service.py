from decimal import Decimal

import pytest

from conftest import OutageRepository, assert_invariant, batch_remainders
from stockledger.errors import LedgerInvariantError, NotFound, PersistenceError
from stockledger.models import MovementType, ReferenceType
from stockledger.services import build_stock_services
from stockledger.services.alert_service import AlertType
from stockledger.validation import ValidationError


@pytest.fixture
def flour(make_ingredient):
    return make_ingredient(
        name='Flour',
        unit='kg',
        min_stock='10',
        cost_per_unit='2.50',
        batches=[('30', '2.00', 3), ('20', '3.00', 1)],
    )


def test_missing_stock_is_deducted_fifo(stock, repo, flour):
    result = stock.reconciliation.reconcile(
        [{'ingredient_id': flour.id, 'physical_count': '45'}], performed_by='closing-shift'
    )

    line = result.lines[0]
    assert line.system_count == Decimal('50')
    assert line.difference == Decimal('-5')
    assert line.adjustment_made
    assert batch_remainders(repo, flour.id) == {'B1': Decimal('25'), 'B2': Decimal('20')}
    assert repo.get_ingredient(flour.id).current_stock == Decimal('45')

    movements = repo.list_movements(reference=result.reference)
    assert [(m.movement_type, m.reference_type, m.quantity) for m in movements] == [
        (MovementType.STOCK_OUT, ReferenceType.RECONCILIATION, Decimal('5')),
    ]
    assert movements[0].performed_by == 'closing-shift'
    assert_invariant(repo, flour.id)


def test_found_stock_becomes_new_batch(stock, repo, flour):
    result = stock.reconciliation.reconcile([{'ingredient_id': flour.id, 'physical_count': '60'}])

    line = result.lines[0]
    assert line.difference == Decimal('10')
    new_batch = repo.get_batch(line.batch_id)
    assert new_batch.initial_quantity == Decimal('10')
    assert new_batch.cost_per_unit == Decimal('2.50')
    assert new_batch.reference == result.reference
    assert batch_remainders(repo, flour.id)['B1'] == Decimal('30')
    assert repo.get_ingredient(flour.id).current_stock == Decimal('60')

    movement = repo.list_movements(reference=result.reference)[0]
    assert movement.movement_type == MovementType.STOCK_IN
    assert movement.reference_type == ReferenceType.RECONCILIATION
    assert_invariant(repo, flour.id)


def test_surplus_uses_supplied_cost(stock, repo, flour):
    result = stock.reconciliation.reconcile(
        [{'ingredient_id': flour.id, 'physical_count': '52', 'unit_cost': '4.10'}]
    )

    assert repo.get_batch(result.lines[0].batch_id).cost_per_unit == Decimal('4.10')


def test_difference_inside_tolerance_is_skipped(stock, repo, flour):
    movements_before = len(repo.list_movements(ingredient_id=flour.id))

    result = stock.reconciliation.reconcile([{'ingredient_id': flour.id, 'physical_count': '50.005'}])

    assert not result.lines[0].adjustment_made
    assert result.adjusted_count == 0
    assert len(repo.list_movements(ingredient_id=flour.id)) == movements_before


def test_reference_is_shared_by_the_run(stock, repo, flour, make_ingredient):
    sugar = make_ingredient(name='Sugar', batches=[('10', '1', 1)])

    result = stock.reconciliation.reconcile(
        [
            {'ingredient_id': flour.id, 'physical_count': '40'},
            {'ingredient_id': sugar.id, 'physical_count': '12'},
        ],
        reference='COUNT-2026-10',
    )

    assert result.reference == 'COUNT-2026-10'
    assert result.adjusted_count == 2
    assert {m.ingredient_id for m in repo.list_movements(reference='COUNT-2026-10')} == {flour.id, sugar.id}


def test_generated_reference_prefix(stock, flour):
    result = stock.reconciliation.reconcile([{'ingredient_id': flour.id, 'physical_count': '50'}])

    assert result.reference.startswith('REC-')
    assert len(result.reference) == 16


def test_failed_item_does_not_block_the_rest(stock, repo, flour):
    result = stock.reconciliation.reconcile(
        [
            {'ingredient_id': 999, 'physical_count': '3'},
            {'ingredient_id': flour.id, 'physical_count': '48'},
        ]
    )

    assert isinstance(result.lines[0].error, NotFound)
    assert result.failed_count == 1
    assert result.lines[1].adjustment_made
    assert repo.get_ingredient(flour.id).current_stock == Decimal('48')


def test_count_to_zero_reports_out_of_stock(stock, repo, flour):
    result = stock.reconciliation.reconcile([{'ingredient_id': flour.id, 'physical_count': '0'}])

    assert repo.get_ingredient(flour.id).current_stock == Decimal('0')
    assert AlertType.OUT_OF_STOCK in {a.type for a in result.alerts}
    assert_invariant(repo, flour.id)


@pytest.mark.parametrize('items', [
    [],
    None,
    [{'ingredient_id': 1, 'physical_count': '-1'}],
    [{'ingredient_id': 1, 'physical_count': '2'}, {'ingredient_id': 1, 'physical_count': '3'}],
])
def test_invalid_counts_are_rejected(stock, items):
    with pytest.raises(ValidationError):
        stock.reconciliation.reconcile(items)


def test_storage_failure_is_reported_per_item():
    repo = OutageRepository()
    services = build_stock_services(repo)
    flour = services.ingredients.create({'name': 'Flour', 'unit': 'kg'})
    sugar = services.ingredients.create({'name': 'Sugar', 'unit': 'kg'})
    services.receiving.receive(flour.id, '8', unit_cost='2')
    services.receiving.receive(sugar.id, '8', unit_cost='3')
    repo.down.add(sugar.id)

    result = services.reconciliation.reconcile([
        {'ingredient_id': flour.id, 'physical_count': '5'},
        {'ingredient_id': sugar.id, 'physical_count': '5'},
    ])

    assert [line.ingredient_id for line in result.lines] == [flour.id, sugar.id]
    assert result.lines[0].adjustment_made
    assert result.lines[0].error is None
    assert isinstance(result.lines[1].error, PersistenceError)
    assert result.lines[1].adjustment_made is False
    assert result.to_dict()['lines'][1]['error']['kind'] == 'persistence_error'
    assert repo.get_ingredient(flour.id).current_stock == Decimal('5')
    assert repo.get_ingredient(sugar.id).current_stock == Decimal('8')


def test_ledger_invariant_failure_still_aborts():
    repo = OutageRepository(error=LedgerInvariantError(1, Decimal('1'), Decimal('0')))
    services = build_stock_services(repo)
    flour = services.ingredients.create({'name': 'Flour', 'unit': 'kg'})
    repo.down.add(flour.id)

    with pytest.raises(LedgerInvariantError):
        services.reconciliation.reconcile([{'ingredient_id': flour.id, 'physical_count': '5'}])
