from decimal import Decimal

import pytest

from stockledger.errors import NotFound
from stockledger.services.alert_service import AlertType
from stockledger.validation import ValidationError


def test_create_normalizes_numbers(stock):
    ingredient = stock.ingredients.create(
        {'name': ' Oat milk ', 'unit': 'liter', 'min_stock': 2, 'max_stock': '20.5', 'cost_per_unit': 1.499}
    )

    assert ingredient.name == 'Oat milk'
    assert ingredient.current_stock == Decimal('0')
    assert ingredient.max_stock == Decimal('20.5')
    assert ingredient.cost_per_unit == Decimal('1.50')
    assert ingredient.is_active is True


@pytest.mark.parametrize('payload', [
    {'unit': 'kg'},
    {'name': 'Flour'},
    {'name': 'Flour', 'unit': 'kg', 'current_stock': '5'},
    {'name': 'Flour', 'unit': 'kg', 'min_stock': '-1'},
    {'name': 'Flour', 'unit': 'kg', 'min_stock': '10', 'max_stock': '5'},
    {'name': 'Flour', 'unit': 'kg', 'is_active': 'maybe'},
    {'name': '', 'unit': 'kg'},
])
def test_create_rejects_bad_payloads(stock, payload):
    with pytest.raises(ValidationError):
        stock.ingredients.create(payload)


def test_names_are_unique(stock, make_ingredient):
    make_ingredient(name='Flour')

    with pytest.raises(ValidationError):
        stock.ingredients.create({'name': 'Flour', 'unit': 'kg'})


def test_update_thresholds(stock, make_ingredient):
    flour = make_ingredient(name='Flour', min_stock='2', max_stock='30')

    updated = stock.ingredients.update(flour.id, {'min_stock': '5', 'is_active': 'false'})

    assert updated.min_stock == Decimal('5')
    assert updated.is_active is False
    assert [i.name for i in stock.ingredients.list()] == []
    assert [i.name for i in stock.ingredients.list(active_only=False)] == ['Flour']


def test_update_keeps_threshold_order(stock, make_ingredient):
    flour = make_ingredient(name='Flour', min_stock='2', max_stock='30')

    with pytest.raises(ValidationError):
        stock.ingredients.update(flour.id, {'min_stock': '40'})


def test_update_unknown_ingredient(stock):
    with pytest.raises(NotFound):
        stock.ingredients.update(404, {'min_stock': '1'})


def test_summary_values_live_batches(stock, make_ingredient):
    flour = make_ingredient(name='Flour', min_stock='10', batches=[('4', '2.00', 3), ('2', '3.50', 1)])

    summary = stock.ingredients.get_summary(flour.id)

    assert summary['current_stock'] == 6.0
    assert summary['stock_value'] == 15.0
    assert summary['average_cost_per_unit'] == 2.5
    assert [b['batch_number'] for b in summary['active_batches']] == ['B1', 'B2']
    assert [a['type'] for a in summary['alerts']] == [AlertType.LOW_STOCK.value]
