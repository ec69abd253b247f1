import csv
import io
import json

from openpyxl import load_workbook

from models import db, ApiKey, UsageTracking
from exports import EXPORT_HEADERS, export_csv
from security import user_limiter


def exporter(make_user, **fields):
    return make_user(tier='premium', features=['data_export'], active=True, **fields)


def test_csv_export_includes_custom_columns(client, make_user, auth_headers, add_price):
    add_price(value=1200)
    response = client.post('/api/premium/export/csv', headers=auth_headers(exporter(make_user)),
                           json={'customFields': ['source', 'season']})
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert '.csv' in response.headers['Content-Disposition']

    rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
    assert rows[0] == EXPORT_HEADERS + ['source', 'season']
    assert len(rows[1]) == len(rows[0])
    assert rows[1][-2:] == ['market_survey', 'dry_season']


def test_csv_rows_line_up_without_custom_fields(app, add_price):
    price = add_price()
    rows = list(csv.reader(io.StringIO(export_csv([price], ['unknownField']).decode())))
    assert rows[1][-1] == ''
    assert len(rows[1]) == len(EXPORT_HEADERS) + 1


def test_excel_export_with_analytics_sheet(client, make_user, auth_headers, add_price):
    add_price(value=1000)
    add_price(value=2000)
    response = client.post('/api/premium/export/excel', headers=auth_headers(exporter(make_user)),
                           json={'includeAnalytics': True})
    assert response.status_code == 200
    assert '.xlsx' in response.headers['Content-Disposition']

    workbook = load_workbook(io.BytesIO(response.data))
    assert workbook.sheetnames == ['Crop Prices', 'Analytics']
    assert workbook['Crop Prices'].max_row == 3
    analytics = list(workbook['Analytics'].iter_rows(min_row=2, values_only=True))
    assert analytics == [('maize', 1500, 1000, 2000, 2)]


def test_json_export_metadata(client, make_user, auth_headers, add_price):
    add_price(crop='yam', value=2500, unit='per tuber')
    add_price(value=900)
    user = exporter(make_user)
    response = client.post('/api/premium/export/json', headers=auth_headers(user), json={'cropName': 'yam'})
    payload = json.loads(response.data)
    assert response.status_code == 200
    assert payload['metadata']['recordCount'] == 1
    assert payload['metadata']['exportedBy'] == user.email
    assert payload['metadata']['filters']['cropName'] == 'yam'
    assert payload['data'][0]['cropName'] == 'yam'


def test_pdf_export(client, make_user, auth_headers, add_price):
    add_price()
    response = client.post('/api/premium/export/pdf', headers=auth_headers(exporter(make_user)), json={})
    assert response.status_code == 200
    assert response.mimetype == 'application/pdf'
    assert response.data.startswith(b'%PDF')


def test_export_counts_against_monthly_limit(client, make_user, auth_headers, add_price):
    add_price()
    user = exporter(make_user)
    UsageTracking.increment_usage(user.id, 'data_export', 4)
    db.session.commit()

    assert client.post('/api/premium/export/csv', headers=auth_headers(user), json={}).status_code == 200
    response = client.post('/api/premium/export/csv', headers=auth_headers(user), json={})
    body = response.get_json()
    assert response.status_code == 429
    assert body['limit'] == 5
    assert body['used'] == 5


def test_unknown_format_and_empty_result(client, make_user, auth_headers):
    headers = auth_headers(exporter(make_user))
    assert client.post('/api/premium/export/docx', headers=headers, json={}).status_code == 400
    assert client.post('/api/premium/export/csv', headers=headers, json={}).status_code == 404


def test_premium_requests_are_rate_limited_per_user(client, make_user, auth_headers, monkeypatch):
    monkeypatch.setattr(user_limiter, 'max_requests', 1)
    first = make_user(tier='basic', features=['advanced_analytics'], active=True)
    second = make_user(tier='basic', features=['advanced_analytics'], active=True)

    assert client.get('/api/premium/analytics/advanced', headers=auth_headers(first)).status_code == 200
    response = client.get('/api/premium/analytics/advanced', headers=auth_headers(first))
    assert response.status_code == 429
    assert response.get_json()['retryAfter'] > 0
    assert client.get('/api/premium/analytics/advanced', headers=auth_headers(second)).status_code == 200


def test_api_key_lifecycle(client, make_user, auth_headers, add_price):
    add_price(value=1300)
    user = make_user(tier='commercial', features=['api_access'], active=True)

    response = client.post('/api/premium/api-keys', headers=auth_headers(user), json={'name': 'ERP'})
    assert response.status_code == 201
    key = response.get_json()['data']['apiKey']['key']
    assert len(key) == 48

    listed = client.get('/api/premium/api-keys', headers=auth_headers(user)).get_json()['data']['apiKeys']
    assert listed[0]['key'] == key[:6] + '...'

    response = client.get('/api/premium/api/prices', headers={'x-api-key': key})
    assert response.status_code == 200
    assert response.get_json()['data']['prices'][0]['pricePerUnit']['value'] == 1300
    api_key = ApiKey.query.filter_by(key=key).first()
    assert api_key.usage == 1
    assert api_key.last_used is not None
    assert UsageTracking.get_user_usage(user.id, 'api_call') == 1

    client.delete(f'/api/premium/api-keys/{api_key.id}', headers=auth_headers(user))
    response = client.get('/api/premium/api/prices', headers={'x-api-key': key})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid API key'


def test_api_requires_key_and_tier(client, make_user, auth_headers):
    response = client.get('/api/premium/api/prices')
    assert response.status_code == 401
    assert response.get_json()['message'] == 'API key is required'

    farmer = make_user(tier='premium', features=['api_access'], active=True)
    response = client.post('/api/premium/api-keys', headers=auth_headers(farmer), json={})
    assert response.status_code == 403
