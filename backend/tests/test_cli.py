from stockledger.cli import stock_alerts, stock_reorder, stock_valuation, stock_verify_ledger


def _seed(client):
    response = client.post('/api/stock/ingredients', json={'name': 'Milk', 'unit': 'liter', 'min_stock': '4'})
    ingredient_id = response.get_json()['ingredient']['id']
    client.post('/api/stock/batches', json={'ingredient_id': ingredient_id, 'quantity': '1', 'unit_cost': '2.5'})
    return ingredient_id


def test_verify_ledger_passes(app, client):
    _seed(client)

    result = app.test_cli_runner().invoke(stock_verify_ledger)

    assert result.exit_code == 0
    assert 'PASS 1 ingredient(s) consistent.' in result.output


def test_alerts_lists_low_stock(app, client):
    _seed(client)

    result = app.test_cli_runner().invoke(stock_alerts, ['--min-severity', 'high'])

    assert result.exit_code == 0
    assert 'low_stock' in result.output
    assert 'Milk' in result.output


def test_valuation_total(app, client):
    _seed(client)

    result = app.test_cli_runner().invoke(stock_valuation)

    assert result.exit_code == 0
    assert '2.50' in result.output


def test_reorder_lists_suggestions(app, client):
    _seed(client)

    result = app.test_cli_runner().invoke(stock_reorder, ['--lead-time-days', '3'])

    assert result.exit_code == 0
    assert 'Milk' in result.output
    assert 'high' in result.output
