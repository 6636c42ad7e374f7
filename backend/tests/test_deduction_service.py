from decimal import Decimal

import pytest

from conftest import assert_invariant, batch_remainders
from stockledger.errors import AlreadyProcessed, InsufficientStock, LedgerInvariantError, NotFound
from stockledger.models import BatchStatus, MovementType, ReferenceType
from stockledger.services.alert_service import AlertType
from stockledger.services.deduction_service import OutcomeStatus, WarningType
from stockledger.validation import ValidationError


@pytest.fixture
def coffee(make_ingredient):
    # B1 received two days ago, B2 yesterday
    return make_ingredient(
        name='Coffee beans',
        unit='kg',
        min_stock='2',
        batches=[('5', '1000', 2), ('5', '1200', 1)],
    )


def test_fifo_deduction_consumes_oldest_batch(stock, repo, coffee):
    result = stock.deductions.deduct(coffee.id, '7', reference='ORD-1')

    assert batch_remainders(repo, coffee.id) == {'B1': Decimal('0'), 'B2': Decimal('3')}
    b1 = next(b for b in repo.list_batches(coffee.id) if b.batch_number == 'B1')
    assert b1.status == BatchStatus.CONSUMED
    assert repo.get_ingredient(coffee.id).current_stock == Decimal('3')
    assert result.outcomes[0].status is OutcomeStatus.DEDUCTED
    assert_invariant(repo, coffee.id)


def test_deduction_costs_are_batch_weighted(stock, coffee):
    result = stock.deductions.deduct(coffee.id, '7', reference='ORD-1')

    deduction = result.deductions[0]
    assert deduction.total_cost == Decimal('7400.00')
    assert deduction.average_cost_per_unit == Decimal('1057.14')
    assert result.total_cost == Decimal('7400.00')


def test_one_movement_per_batch_touched(stock, repo, coffee):
    stock.deductions.deduct(coffee.id, '7', reference='ORD-1', performed_by='barista')

    movements = repo.list_movements(ingredient_id=coffee.id, movement_type=MovementType.STOCK_OUT)
    assert [(m.quantity, m.unit_cost, m.total_cost) for m in movements] == [
        (Decimal('5'), Decimal('1000'), Decimal('5000')),
        (Decimal('2'), Decimal('1200'), Decimal('2400')),
    ]
    assert all(m.reference == 'ORD-1' and m.reference_type == ReferenceType.ORDER for m in movements)
    assert [(m.stock_before, m.stock_after) for m in movements] == [
        (Decimal('10'), Decimal('5')),
        (Decimal('5'), Decimal('3')),
    ]
    assert movements[0].performed_by == 'barista'


def test_insufficient_stock_without_force_makes_no_changes(stock, repo, make_ingredient):
    milk = make_ingredient(name='Milk', batches=[('3', '10', 2), ('5', '10', 1)])
    movements_before = len(repo.list_movements(ingredient_id=milk.id))

    with pytest.raises(InsufficientStock) as excinfo:
        stock.deductions.deduct(milk.id, '20', reference='ORD-2')

    assert excinfo.value.shortage == Decimal('12')
    assert excinfo.value.available == Decimal('8')
    assert repo.get_ingredient(milk.id).current_stock == Decimal('8')
    assert batch_remainders(repo, milk.id) == {'B1': Decimal('3'), 'B2': Decimal('5')}
    assert len(repo.list_movements(ingredient_id=milk.id)) == movements_before
    assert not repo.is_processed('ORD-2', milk.id)


def test_forced_deduction_takes_everything_and_reports_shortage(stock, repo, make_ingredient):
    milk = make_ingredient(name='Milk', batches=[('3', '10', 2), ('5', '10', 1)])

    result = stock.deductions.deduct(milk.id, '20', reference='ORD-3', force=True)

    deduction = result.deductions[0]
    assert deduction.quantity_deducted == Decimal('8')
    assert deduction.shortage == Decimal('12')
    assert result.outcomes[0].status is OutcomeStatus.PARTIAL
    assert repo.get_ingredient(milk.id).current_stock == Decimal('0')
    assert [w.type for w in result.warnings] == [WarningType.INSUFFICIENT_STOCK]
    assert AlertType.OUT_OF_STOCK in {a.type for a in result.alerts}
    assert_invariant(repo, milk.id)


def test_same_reference_is_applied_once(stock, repo, coffee):
    stock.deductions.deduct(coffee.id, '2', reference='ORD-4')

    with pytest.raises(AlreadyProcessed):
        stock.deductions.deduct(coffee.id, '2', reference='ORD-4')

    assert repo.get_ingredient(coffee.id).current_stock == Decimal('8')


def test_unknown_ingredient_is_not_found(stock):
    with pytest.raises(NotFound):
        stock.deductions.deduct(999, '1', reference='ORD-5')


@pytest.mark.parametrize('quantity', ['0', '-1', 'abc', None])
def test_invalid_quantity_is_rejected(stock, coffee, quantity):
    with pytest.raises(ValidationError):
        stock.deductions.deduct(coffee.id, quantity, reference='ORD-6')


def test_depleted_batch_raises_info_alert(stock, coffee):
    result = stock.deductions.deduct(coffee.id, '5', reference='ORD-7')

    depleted = [a for a in result.alerts if a.type == AlertType.BATCH_DEPLETED]
    assert [a.data['batch_number'] for a in depleted] == ['B1']


def test_specific_batch_deduction(stock, repo, coffee):
    b2 = next(b for b in repo.list_batches(coffee.id) if b.batch_number == 'B2')

    stock.deductions.deduct(coffee.id, '4', reference='ORD-8', policy='specific_batch', batch_ids=[b2.id])

    assert batch_remainders(repo, coffee.id) == {'B1': Decimal('5'), 'B2': Decimal('1')}


def test_order_aggregates_lines_per_ingredient(stock, repo, coffee, make_ingredient):
    milk = make_ingredient(name='Milk', batches=[('10', '5', 1)])

    result = stock.deductions.deduct_for_order(
        'ORD-9',
        [
            {'ingredient_id': coffee.id, 'quantity': '3'},
            {'ingredient_id': milk.id, 'quantity': '1.5'},
            (coffee.id, '4'),
        ],
    )

    coffee_outcome = result.outcome_for(coffee.id)
    assert coffee_outcome.quantity_requested == Decimal('7')
    assert coffee_outcome.deduction.total_cost == Decimal('7400.00')
    assert repo.get_ingredient(milk.id).current_stock == Decimal('8.5')
    assert len(repo.list_movements(reference='ORD-9', ingredient_id=coffee.id)) == 2
    assert result.success


def test_order_failure_is_isolated_per_ingredient(stock, repo, coffee, make_ingredient):
    sugar = make_ingredient(name='Sugar', batches=[('1', '3', 1)])

    result = stock.deductions.deduct_for_order(
        'ORD-10',
        [(coffee.id, '2'), (sugar.id, '5'), (424242, '1')],
    )

    assert result.outcome_for(coffee.id).status is OutcomeStatus.DEDUCTED
    sugar_outcome = result.outcome_for(sugar.id)
    assert sugar_outcome.status is OutcomeStatus.FAILED
    assert isinstance(sugar_outcome.error, InsufficientStock)
    assert isinstance(result.outcome_for(424242).error, NotFound)
    assert not result.success

    assert repo.get_ingredient(coffee.id).current_stock == Decimal('8')
    assert repo.get_ingredient(sugar.id).current_stock == Decimal('1')
    assert_invariant(repo, sugar.id)


def test_order_retry_only_applies_missing_ingredients(stock, repo, coffee, make_ingredient):
    sugar = make_ingredient(name='Sugar', batches=[('1', '3', 1)])
    stock.deductions.deduct_for_order('ORD-11', [(coffee.id, '2'), (sugar.id, '5')])

    stock.receiving.receive(sugar.id, '10', unit_cost='3')
    retry = stock.deductions.deduct_for_order('ORD-11', [(coffee.id, '2'), (sugar.id, '5')])

    assert retry.outcome_for(coffee.id).status is OutcomeStatus.ALREADY_PROCESSED
    assert retry.outcome_for(sugar.id).status is OutcomeStatus.DEDUCTED
    assert repo.get_ingredient(coffee.id).current_stock == Decimal('8')
    assert repo.get_ingredient(sugar.id).current_stock == Decimal('6')


def test_fully_processed_order_is_rejected(stock, repo, coffee):
    stock.deductions.deduct_for_order('ORD-12', [(coffee.id, '1')])

    with pytest.raises(AlreadyProcessed):
        stock.deductions.deduct_for_order('ORD-12', [(coffee.id, '1')])

    assert repo.get_ingredient(coffee.id).current_stock == Decimal('9')


def test_order_requires_requirements(stock):
    with pytest.raises(ValidationError):
        stock.deductions.deduct_for_order('ORD-13', [])


def test_broken_aggregate_rolls_back_the_deduction(memory_repo):
    from stockledger.services import build_stock_services

    services = build_stock_services(memory_repo)
    ingredient = services.ingredients.create({'name': 'Oat milk', 'unit': 'liter'})
    services.receiving.receive(ingredient.id, '4', unit_cost='2')
    # Simulate drift between the aggregate and its batches
    memory_repo.get_ingredient(ingredient.id).current_stock = Decimal('5')

    with pytest.raises(LedgerInvariantError):
        services.deductions.deduct(ingredient.id, '1', reference='ORD-14')

    assert batch_remainders(memory_repo, ingredient.id) == {
        b.batch_number: Decimal('4') for b in memory_repo.list_batches(ingredient.id)
    }
    assert memory_repo.list_movements(reference='ORD-14') == []
    assert not memory_repo.is_processed('ORD-14', ingredient.id)


def test_preview_matches_commit_without_writing(stock, repo, coffee):
    preview = stock.deductions.preview([(coffee.id, '7')])

    line = preview.lines[0]
    assert preview.can_proceed
    assert line.sufficient
    assert line.estimated_cost == Decimal('7400.00')
    assert line.stock_after == Decimal('3')
    assert repo.get_ingredient(coffee.id).current_stock == Decimal('10')
    assert repo.list_movements(movement_type=MovementType.STOCK_OUT) == []

    committed = stock.deductions.deduct_for_order('ORD-15', [(coffee.id, '7')])
    assert committed.total_cost == line.estimated_cost


def test_preview_reports_shortage_and_low_stock(stock, coffee, make_ingredient):
    milk = make_ingredient(name='Milk', min_stock='5', batches=[('6', '10', 1)])

    preview = stock.deductions.preview([(coffee.id, '12'), (milk.id, '2'), (777, '1')])

    assert not preview.can_proceed
    by_id = {line.ingredient_id: line for line in preview.lines}
    assert by_id[coffee.id].shortage == Decimal('2')
    assert not by_id[777].found
    warning_types = {(w.ingredient_id, w.type) for w in preview.warnings}
    assert (coffee.id, WarningType.INSUFFICIENT_STOCK) in warning_types
    assert (milk.id, WarningType.LOW_STOCK) in warning_types


def test_expired_batch_is_still_consumed_first(stock, repo, make_ingredient, days_ago):
    cream = make_ingredient(
        name='Cream',
        min_stock='1',
        batches=[('2', '3.00', 5, days_ago(1)), ('4', '3.40', 1, days_ago(-6))],
    )
    before = stock.alerts.for_ingredients([cream.id])
    assert [a.data['batch_number'] for a in before if a.type is AlertType.EXPIRED] == ['B1']
    assert [b.batch_number for b in stock.ledger.mark_expired_batches()] == ['B1']

    result = stock.deductions.deduct(cream.id, '3', reference='ORD-EXP')

    assert [s.batch_number for s in result.deductions[0].plan.slices] == ['B1', 'B2']
    b1 = next(b for b in repo.list_batches(cream.id) if b.batch_number == 'B1')
    assert b1.status == BatchStatus.CONSUMED
    assert b1.remaining_quantity == Decimal('0')
    assert batch_remainders(repo, cream.id) == {'B1': Decimal('0'), 'B2': Decimal('3')}
    assert_invariant(repo, cream.id)
