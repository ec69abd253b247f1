from datetime import datetime, timedelta

from security import RateLimiter


def test_rate_limiter_blocks_after_max_requests():
    limiter = RateLimiter(max_requests=2, window=timedelta(seconds=60))
    assert limiter.hit('1.2.3.4', now=1000) == (True, 0)
    assert limiter.hit('1.2.3.4', now=1001) == (True, 0)
    assert limiter.hit('1.2.3.4', now=1010) == (False, 50)
    # Other keys have their own window
    assert limiter.hit('5.6.7.8', now=1010) == (True, 0)


def test_rate_limiter_window_resets():
    limiter = RateLimiter(max_requests=1, window=60)
    limiter.hit('key', now=0)
    assert limiter.hit('key', now=30)[0] is False
    assert limiter.hit('key', now=61) == (True, 0)


def test_rate_limiter_cleanup_drops_expired_windows():
    limiter = RateLimiter(max_requests=5, window=60)
    limiter.hit('old', now=0)
    limiter.hit('new', now=100)
    assert limiter.cleanup(now=120) == 1
    assert limiter.cleanup(now=120) == 0


def test_missing_token_is_rejected(client):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
    assert response.get_json()['status'] == 'fail'


def test_invalid_token_is_rejected(client):
    response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-token'})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid token. Please log in again.'


def test_suspended_user_is_rejected(client, make_user, auth_headers):
    user = make_user(status='suspended')
    response = client.get('/api/auth/me', headers=auth_headers(user))
    assert response.status_code == 401


def test_farmer_cannot_open_admin_dashboard(client, make_user, auth_headers):
    farmer = make_user()
    response = client.get('/api/admin/dashboard', headers=auth_headers(farmer))
    assert response.status_code == 403
    assert response.get_json()['status'] == 'fail'


def test_expired_subscription_is_sent_to_upgrade(client, make_user, auth_headers):
    user = make_user(tier='basic', features=['advanced_analytics'],
                     subscription_expires_at=datetime.utcnow() - timedelta(days=1))
    response = client.get('/api/premium/analytics/advanced', headers=auth_headers(user))
    body = response.get_json()
    assert response.status_code == 403
    assert body['redirectTo'] == '/subscription/upgrade'


def test_tier_below_requirement_is_rejected(client, make_user, auth_headers):
    user = make_user(tier='basic', features=['data_export'], active=True)
    response = client.post('/api/premium/export/csv', headers=auth_headers(user), json={})
    body = response.get_json()
    assert response.status_code == 403
    assert body['requiredTier'] == 'premium'
    assert body['currentTier'] == 'basic'


def test_missing_feature_flag_is_rejected(client, make_user, auth_headers):
    user = make_user(tier='basic', active=True)
    response = client.get('/api/premium/analytics/advanced', headers=auth_headers(user))
    assert response.status_code == 403
    assert response.get_json()['feature'] == 'advanced_analytics'


def test_active_subscriber_gets_analytics(client, make_user, auth_headers, add_price):
    add_price(value=900, days_ago=2)
    add_price(value=1100, days_ago=1)
    user = make_user(tier='basic', features=['advanced_analytics'], active=True)
    response = client.get('/api/premium/analytics/advanced?groupBy=month', headers=auth_headers(user))
    body = response.get_json()
    assert response.status_code == 200
    assert body['status'] == 'success'
    assert body['data']['insights']['highestPrice'] == 1100


def test_admin_bypasses_subscription_checks(client, make_user, auth_headers):
    admin = make_user(role='admin')
    response = client.get('/api/premium/analytics/advanced', headers=auth_headers(admin))
    assert response.status_code == 200
