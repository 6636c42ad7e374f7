"""
HTTP contract tests for the stock ledger API.

Covers the happy paths for every route group and the error-kind to
status mapping (400 / 404 / 409).
"""


def _create_ingredient(client, name='Milk', **extra):
    payload = {'name': name, 'unit': 'liter', 'min_stock': '2', **extra}
    response = client.post('/api/stock/ingredients', json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['ingredient']['id']


def _receive(client, ingredient_id, quantity, unit_cost, **extra):
    payload = {'ingredient_id': ingredient_id, 'quantity': quantity, 'unit_cost': unit_cost, **extra}
    response = client.post('/api/stock/batches', json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['batch']


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'healthy'
    assert body['checks']['ledger']['status'] == 'healthy'


def test_create_and_update_ingredient(client):
    ingredient_id = _create_ingredient(client)

    response = client.patch(f'/api/stock/ingredients/{ingredient_id}', json={'min_stock': '5', 'max_stock': '40'})

    assert response.status_code == 200
    assert response.get_json()['ingredient']['min_stock'] == 5.0


def test_current_stock_is_not_writable(client):
    response = client.post('/api/stock/ingredients', json={'name': 'Milk', 'unit': 'liter', 'current_stock': 10})

    assert response.status_code == 400
    assert response.get_json()['kind'] == 'validation_error'


def test_duplicate_ingredient_name(client):
    _create_ingredient(client)

    response = client.post('/api/stock/ingredients', json={'name': 'Milk', 'unit': 'liter'})

    assert response.status_code == 400


def test_receive_and_deduct_order(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '5', '1000', received_date='2026-01-01', batch_number='B1')
    _receive(client, ingredient_id, '5', '1200', received_date='2026-01-02', batch_number='B2')

    response = client.post(
        '/api/stock/orders/ORD-100/deduct',
        json={'requirements': [{'ingredient_id': ingredient_id, 'quantity': 7}], 'performed_by': 'pos'},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['total_cost'] == 7400.0
    deduction = body['outcomes'][0]['deduction']
    assert [b['quantity'] for b in deduction['batches']] == [5.0, 2.0]
    assert deduction['average_cost_per_unit'] == 1057.14

    summary = client.get(f'/api/stock/ingredients/{ingredient_id}').get_json()['ingredient']
    assert summary['current_stock'] == 3.0
    assert summary['stock_value'] == 3600.0


def test_repeated_order_is_conflict(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '5', '1')
    body = {'requirements': [{'ingredient_id': ingredient_id, 'quantity': 1}]}

    assert client.post('/api/stock/orders/ORD-101/deduct', json=body).status_code == 200
    response = client.post('/api/stock/orders/ORD-101/deduct', json=body)

    assert response.status_code == 409
    assert response.get_json()['kind'] == 'already_processed'


def test_order_reports_failed_items(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '1', '1')

    response = client.post(
        '/api/stock/orders/ORD-102/deduct',
        json={'requirements': [{'ingredient_id': ingredient_id, 'quantity': 3}]},
    )

    assert response.status_code == 200
    outcome = response.get_json()['outcomes'][0]
    assert outcome['status'] == 'failed'
    assert outcome['error']['kind'] == 'insufficient_stock'
    assert outcome['error']['shortage'] == 2.0


def test_invalid_order_payload(client):
    response = client.post('/api/stock/orders/ORD-103/deduct', json={'requirements': 'milk'})

    assert response.status_code == 400


def test_preview_does_not_write(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '4', '2')

    response = client.post('/api/stock/preview', json={'requirements': [[ingredient_id, 6]]})

    body = response.get_json()
    assert response.status_code == 200
    assert body['can_proceed'] is False
    assert body['lines'][0]['shortage'] == 2.0
    movements = client.get(f'/api/stock/ingredients/{ingredient_id}/movements').get_json()['movements']
    assert [m['movement_type'] for m in movements] == ['stock_in']


def test_reverse_order(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '5', '3')
    client.post(
        '/api/stock/orders/ORD-104/deduct',
        json={'requirements': [{'ingredient_id': ingredient_id, 'quantity': 2}]},
    )

    response = client.post('/api/stock/orders/ORD-104/reverse', json={'reason': 'order voided'})

    assert response.status_code == 201
    assert response.get_json()['reversal_reference'] == 'REV-ORD-104'
    assert client.post('/api/stock/orders/ORD-104/reverse').status_code == 409
    assert client.post('/api/stock/orders/ORD-NONE/reverse').status_code == 404


def test_adjustments_and_reconciliation(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '10', '1.50')

    adjust = client.post('/api/stock/adjustments', json={
        'adjustments': [{'ingredient_id': ingredient_id, 'adjustment_type': 'waste', 'quantity': 1, 'reason': 'spilled'}],
    })
    assert adjust.status_code == 200
    assert adjust.get_json()['lines'][0]['new_stock_level'] == 9.0

    reconcile = client.post('/api/stock/reconciliations', json={
        'items': [{'ingredient_id': ingredient_id, 'physical_count': 8}],
        'performed_by': 'closing-shift',
    })
    assert reconcile.status_code == 200
    line = reconcile.get_json()['lines'][0]
    assert line['difference'] == -1.0
    assert line['adjustment_made'] is True


def test_write_off_batch(client):
    ingredient_id = _create_ingredient(client)
    batch = _receive(client, ingredient_id, '3', '2')

    response = client.post(f"/api/stock/batches/{batch['id']}/write-off", json={'reason': 'mould'})

    assert response.status_code == 200
    assert response.get_json()['write_off']['quantity_deducted'] == 3.0
    assert client.post('/api/stock/batches/9999/write-off').status_code == 404


def test_list_batches_and_movements(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '2', '1')
    _receive(client, ingredient_id, '3', '1')
    client.post(
        '/api/stock/orders/ORD-105/deduct',
        json={'requirements': [{'ingredient_id': ingredient_id, 'quantity': 2}]},
    )

    every = client.get(f'/api/stock/ingredients/{ingredient_id}/batches').get_json()['batches']
    available = client.get(f'/api/stock/ingredients/{ingredient_id}/batches?available=1').get_json()['batches']
    assert len(every) == 2
    assert len(available) == 1

    outgoing = client.get(
        f'/api/stock/ingredients/{ingredient_id}/movements?movement_type=stock_out'
    ).get_json()['movements']
    assert [m['reference'] for m in outgoing] == ['ORD-105']

    assert client.get(f'/api/stock/ingredients/{ingredient_id}/movements?limit=0').status_code == 400
    assert client.get('/api/stock/ingredients/999/batches').status_code == 404


def test_reports(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '1', '4')

    verify = client.get('/api/stock/ledger/verify').get_json()
    assert verify['ok'] is True

    valuation = client.get('/api/stock/valuation').get_json()
    assert valuation['total_value'] == 4.0

    stats = client.get('/api/stock/stats?date=2026-01-01')
    assert stats.status_code == 200
    assert stats.get_json()['date'] == '2026-01-01'
    assert client.get('/api/stock/stats?date=yesterday').status_code == 400

    alerts = client.get('/api/stock/alerts?min_severity=medium').get_json()
    assert [(a['type'], a['severity']) for a in alerts['alerts']] == [('low_stock', 'high')]
    assert client.get('/api/stock/alerts?min_severity=urgent').status_code == 400


def test_force_flag_must_be_a_real_boolean(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '8', '1')
    body = {'requirements': [{'ingredient_id': ingredient_id, 'quantity': 20}]}

    response = client.post('/api/stock/orders/ORD-106/deduct', json={**body, 'force': 'false'})

    assert response.status_code == 200
    outcome = response.get_json()['outcomes'][0]
    assert outcome['status'] == 'failed'
    assert outcome['error']['kind'] == 'insufficient_stock'
    summary = client.get(f'/api/stock/ingredients/{ingredient_id}').get_json()['ingredient']
    assert summary['current_stock'] == 8.0
    movements = client.get(f'/api/stock/ingredients/{ingredient_id}/movements').get_json()['movements']
    assert [m['movement_type'] for m in movements] == ['stock_in']

    assert client.post('/api/stock/orders/ORD-107/deduct', json={**body, 'force': 'yes'}).status_code == 400
    assert client.post('/api/stock/orders/ORD-108/deduct', json={**body, 'force': 1.5}).status_code == 400

    forced = client.post('/api/stock/orders/ORD-109/deduct', json={**body, 'force': True})
    assert forced.get_json()['outcomes'][0]['status'] == 'partial'


def test_order_reference_length(client):
    ingredient_id = _create_ingredient(client)
    _receive(client, ingredient_id, '8', '1')
    body = {'requirements': [{'ingredient_id': ingredient_id, 'quantity': 1}]}

    assert client.post(f"/api/stock/orders/{'R' * 61}/deduct", json=body).status_code == 400
    assert client.post(f"/api/stock/orders/{'R' * 60}/deduct", json=body).status_code == 200
    assert client.post(f"/api/stock/orders/{'R' * 60}/reverse").status_code == 201


def test_reorder_suggestions_and_analytics(client):
    ingredient_id = _create_ingredient(client, max_stock='10', cost_per_unit='2')
    _receive(client, ingredient_id, '6', '2')
    client.post(
        '/api/stock/orders/ORD-110/deduct',
        json={'requirements': [{'ingredient_id': ingredient_id, 'quantity': 5}]},
    )

    reorder = client.get('/api/stock/reorder-suggestions?lead_time_days=3&safety_multiplier=1')
    assert reorder.status_code == 200
    body = reorder.get_json()
    assert body['count'] == 1
    suggestion = body['suggestions'][0]
    assert suggestion['urgency'] == 'high'
    assert suggestion['suggested_quantity'] == 9.0
    assert body['estimated_total_cost'] == 18.0
    assert client.get('/api/stock/reorder-suggestions?lead_time_days=-2').status_code == 400

    analytics = client.get('/api/stock/analytics?days=7&top=5')
    assert analytics.status_code == 200
    report = analytics.get_json()
    assert report['consumed_value'] == 10.0
    assert report['top_consumed'][0]['ingredient_id'] == ingredient_id
    assert client.get('/api/stock/analytics?days=0').status_code == 400

    alerts = client.get('/api/stock/alerts').get_json()['alerts']
    assert alerts[0]['action_required'] == 'Create purchase order'
    assert alerts[0]['data']['suggested_order_quantity'] == 9.0
