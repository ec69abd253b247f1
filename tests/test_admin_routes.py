from datetime import datetime

from models import db, User
from admin_routes import RequestStats, bucket


def test_request_stats():
    stats = RequestStats()
    assert stats.error_rate == 0
    stats.record(200, 0.010)
    stats.record(500, 0.030)
    assert stats.error_rate == 50
    assert round(stats.average_response_time) == 20


def test_revenue_buckets_by_month():
    rows = [
        (datetime(2024, 2, 3), 5000),
        (datetime(2024, 1, 10), 2500),
        (datetime(2024, 2, 20), 2500),
    ]
    buckets = bucket(rows, lambda d: (d.year, d.month), ('year', 'month'))
    assert buckets[0] == {'_id': {'year': 2024, 'month': 1}, 'revenue': 2500,
                          'transactions': 1, 'averageValue': 2500}
    assert buckets[1]['revenue'] == 7500
    assert buckets[1]['transactions'] == 2


def test_dashboard_overview(client, make_user, auth_headers, add_price):
    admin = make_user(role='admin')
    make_user(tier='basic', active=True)
    add_price(crop='yam', value=2500, unit='per tuber')

    response = client.get('/api/admin/dashboard', headers=auth_headers(admin))
    overview = response.get_json()['data']['overview']
    assert response.status_code == 200
    assert overview['users']['total'] == 2
    assert overview['subscriptions']['conversionRate'] == 50
    assert overview['topCrops'][0]['_id'] == 'yam'
    assert overview['topCrops'][0]['markets'] == ['Igbaja Local Market']


def test_admin_updates_user_status(client, make_user, auth_headers):
    admin = make_user(role='admin')
    farmer = make_user()

    response = client.patch(f'/api/admin/users/{farmer.id}', headers=auth_headers(admin),
                            json={'status': 'suspended', 'subscription.tier': 'premium'})
    assert response.status_code == 200
    updated = db.session.get(User, farmer.id)
    assert updated.status == 'suspended'
    assert updated.subscription_tier == 'premium'

    bad = client.patch(f'/api/admin/users/{farmer.id}', headers=auth_headers(admin),
                       json={'role': 'wizard'})
    assert bad.status_code == 400


def test_user_search(client, make_user, auth_headers):
    admin = make_user(role='admin')
    make_user()

    response = client.get('/api/admin/users?role=farmer', headers=auth_headers(admin))
    body = response.get_json()
    assert response.status_code == 200
    assert body['results'] == 1
    assert body['data']['pagination']['total'] == 1


def test_revenue_needs_permission(client, make_user, auth_headers):
    farmer = make_user()
    response = client.get('/api/admin/revenue', headers=auth_headers(farmer))
    assert response.status_code == 403
    assert response.get_json()['message'] == 'You do not have canViewRevenue permission.'

    analyst = make_user(role='extension_officer', permissions={'canViewRevenue': True})
    response = client.get('/api/admin/revenue?period=week', headers=auth_headers(analyst))
    assert response.status_code == 200
    assert response.get_json()['data']['revenue']['period'] == 'week'
