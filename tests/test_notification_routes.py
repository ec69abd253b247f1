from models import db, PriceAlert
from helpers import broadcast_notification
from notifications import notification_service


def test_preferences_reject_non_e164_phone(client, make_user, auth_headers):
    user = make_user()
    response = client.patch('/api/notifications/preferences', headers=auth_headers(user),
                            json={'phone': '08031234567'})
    assert response.status_code == 400
    assert 'E.164' in response.get_json()['message']


def test_preferences_merge_known_keys_only(client, make_user, auth_headers):
    user = make_user()
    response = client.patch('/api/notifications/preferences', headers=auth_headers(user), json={
        'phone': '+2348031234567',
        'settings': {'marketing': False, 'bogus': True, 'system': 'yes'},
        'preferences': {'method': 'whatsapp'}
    })
    data = response.get_json()['data']
    assert response.status_code == 200
    assert data['phone'] == '+2348031234567'
    assert data['settings']['marketing'] is False
    assert 'bogus' not in data['settings']
    assert data['settings'].get('system') != 'yes'
    assert data['preferences']['method'] == 'whatsapp'


def test_free_user_cannot_create_alerts(client, make_user, auth_headers):
    user = make_user(active=True)
    response = client.post('/api/notifications/alerts', headers=auth_headers(user), json={
        'cropName': 'maize', 'market': 'Igbaja Local Market', 'condition': 'above', 'targetPrice': 1200
    })
    assert response.status_code == 403


def test_create_alert_validation_and_duplicates(client, make_user, auth_headers, add_price):
    user = make_user(tier='basic', active=True)
    headers = auth_headers(user)
    alert = {'cropName': 'maize', 'market': 'Igbaja Local Market', 'condition': 'above', 'targetPrice': 1200}

    bad = client.post('/api/notifications/alerts', headers=headers, json=dict(alert, condition='equal'))
    assert bad.get_json()['message'] == 'Condition must be one of: above, below, change'

    no_target = client.post('/api/notifications/alerts', headers=headers, json=dict(alert, targetPrice=0))
    assert no_target.status_code == 400

    no_data = client.post('/api/notifications/alerts', headers=headers, json=alert)
    assert no_data.get_json()['message'] == 'No price data found for this crop and market combination'

    add_price(value=1000)
    created = client.post('/api/notifications/alerts', headers=headers, json=alert)
    assert created.status_code == 201

    duplicate = client.post('/api/notifications/alerts', headers=headers, json=alert)
    assert duplicate.status_code == 400

    listing = client.get('/api/notifications/alerts', headers=headers).get_json()['data']
    assert listing['limits'] == {'maxAlerts': 10}
    assert listing['alerts'][0]['currentPrice']['value'] == 1000


def test_alert_limit_per_tier(client, make_user, auth_headers, add_price):
    add_price(value=1000)
    user = make_user(tier='basic', active=True)
    for _ in range(10):
        db.session.add(PriceAlert(user_id=user.id, crop_name='maize', market='Offa Market',
                                  condition='change', is_active=True))
    db.session.commit()

    response = client.post('/api/notifications/alerts', headers=auth_headers(user), json={
        'cropName': 'maize', 'market': 'Igbaja Local Market', 'condition': 'change'
    })
    assert response.status_code == 403


def test_inbox_unread_count_and_read_all(client, make_user, auth_headers):
    user = make_user()
    other = make_user()
    broadcast_notification('Price drop', 'Maize is cheaper at Offa', user.id)
    broadcast_notification('Welcome', 'Welcome to AgriTech', user.id)
    broadcast_notification('Hidden', 'Not yours', other.id)
    db.session.commit()
    headers = auth_headers(user)

    inbox = client.get('/api/notifications/inbox', headers=headers).get_json()['data']
    assert len(inbox['notifications']) == 2
    assert inbox['pagination']['unreadCount'] == 2

    client.patch('/api/notifications/inbox/read-all', headers=headers)
    inbox = client.get('/api/notifications/inbox', headers=headers).get_json()['data']
    assert inbox['pagination']['unreadCount'] == 0


def test_bulk_send_is_admin_only(client, make_user, auth_headers):
    farmer = make_user()
    response = client.post('/api/notifications/send-bulk', headers=auth_headers(farmer),
                           json={'message': 'Hello', 'recipients': 'farmers'})
    assert response.status_code == 403


def test_test_alert_needs_verified_phone(client, make_user, auth_headers, add_price):
    add_price(value=1500)
    user = make_user()
    alert = PriceAlert(user_id=user.id, crop_name='maize', market='Igbaja Local Market',
                       condition='above', target_price=1200)
    db.session.add(alert)
    db.session.commit()

    response = client.post(f'/api/notifications/alerts/{alert.id}/test', headers=auth_headers(user))
    assert response.status_code == 403
    assert response.get_json()['redirectTo'] == '/verify-phone'

    user.phone_verified = True
    db.session.commit()
    response = client.post(f'/api/notifications/alerts/{alert.id}/test', headers=auth_headers(user))
    data = response.get_json()['data']
    assert response.status_code == 200
    assert data['currentPrice']['value'] == 1500


def test_bulk_send_uses_whatsapp_template(client, make_user, auth_headers, monkeypatch):
    sent = []
    monkeypatch.setattr(notification_service, 'send_whatsapp_template',
                        lambda phone, template, params, user_id: sent.append((template, params)) or {'success': True})
    monkeypatch.setattr(notification_service, 'send_bulk_sms', lambda recipients, body, type_: [])
    admin = make_user(role='admin')
    make_user(notification_preferences={'method': 'whatsapp'})

    response = client.post('/api/notifications/send-bulk', headers=auth_headers(admin), json={
        'title': 'Market day', 'message': 'Prices are up', 'recipients': 'farmers', 'template': 'market_news'
    })
    assert response.status_code == 200
    assert sent == [('market_news', ['Market day', 'Prices are up'])]
    assert response.get_json()['data']['whatsapp'] == 1
