from models import CropPrice

NEW_PRICE = {
    'cropName': 'yam',
    'market': {'name': 'Offa Market', 'location': {'state': 'Kwara', 'lga': 'Offa'}},
    'pricePerUnit': {'value': 2500, 'unit': 'per tuber'},
    'season': 'harvest_season'
}


def test_list_filters_by_crop_and_market(client, add_price):
    add_price(crop='maize', value=1000)
    add_price(crop='maize', market='Offa Market', value=1200)
    add_price(crop='yam', value=2500, unit='per tuber')

    response = client.get('/api/crop-prices?cropName=maize&market=Offa%20Market')
    prices = response.get_json()
    assert response.status_code == 200
    assert len(prices) == 1
    assert prices[0]['pricePerUnit']['value'] == 1200
    assert prices[0]['cropNameYoruba'] == 'Agbado'


def test_list_is_newest_first_and_limited(client, add_price):
    for days_ago, value in [(3, 900), (1, 1100), (2, 1000)]:
        add_price(value=value, days_ago=days_ago)

    prices = client.get('/api/crop-prices?limit=2').get_json()
    assert [p['pricePerUnit']['value'] for p in prices] == [1100, 1000]


def test_get_missing_price(client):
    response = client.get('/api/crop-prices/999')
    assert response.status_code == 404
    assert response.get_json()['message'] == 'Crop price not found'


def test_admin_creates_price_with_trend(client, make_user, auth_headers, add_price):
    add_price(crop='yam', market='Offa Market', value=2000, unit='per tuber', days_ago=1)
    admin = make_user(role='admin')

    response = client.post('/api/crop-prices', json=NEW_PRICE, headers=auth_headers(admin))
    body = response.get_json()
    assert response.status_code == 201
    assert body['cropNameYoruba'] == 'Isu'
    assert body['trend'] == {'direction': 'rising', 'percentage': 25.0}


def test_unknown_crop_is_rejected(client, make_user, auth_headers):
    admin = make_user(role='admin')
    response = client.post('/api/crop-prices', json=dict(NEW_PRICE, cropName='wheat'),
                           headers=auth_headers(admin))
    assert response.status_code == 400
    assert CropPrice.query.count() == 0


def test_farmer_cannot_write_prices(client, make_user, auth_headers):
    farmer = make_user()
    response = client.post('/api/crop-prices', json=NEW_PRICE, headers=auth_headers(farmer))
    assert response.status_code == 403


def test_predictions_need_crop_name(client):
    response = client.get('/api/crop-prices/predictions')
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Crop name is required for predictions'


def test_predictions_from_history(client, add_price):
    for days_ago, value in enumerate([1200, 1150, 1100, 1050]):
        add_price(value=value, days_ago=days_ago + 1)

    body = client.get('/api/crop-prices/predictions?cropName=maize').get_json()
    assert body['confidence'] == 'medium'
    assert body['historicalDataPoints'] == 4
    assert body['currentPrice'] == 1200


def test_price_value_is_required(client, make_user, auth_headers):
    admin = make_user(role='admin')
    body = {k: v for k, v in NEW_PRICE.items() if k != 'pricePerUnit'}
    response = client.post('/api/crop-prices', json=body, headers=auth_headers(admin))
    assert response.status_code == 400
    assert response.get_json()['message'] == 'pricePerUnit.value is required'
    assert CropPrice.query.count() == 0
