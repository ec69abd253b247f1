from models import db, User, Notification

NEW_USER = {
    'email': 'Tunde@Example.com',
    'phone': '08031234567',
    'password': 'secret123',
    'firstName': 'Tunde',
    'lastName': 'Afolabi'
}


def test_register_creates_farmer_and_returns_token(client):
    response = client.post('/api/auth/register', json=NEW_USER)
    body = response.get_json()
    assert response.status_code == 201
    assert body['status'] == 'success'
    assert body['token']
    assert body['data']['user']['email'] == 'tunde@example.com'

    user = User.query.filter_by(email='tunde@example.com').first()
    assert user.role == 'farmer'
    assert user.subscription_tier == 'free'
    assert user.check_password('secret123')


def test_register_rejects_duplicate_email(client):
    client.post('/api/auth/register', json=NEW_USER)
    response = client.post('/api/auth/register', json=dict(NEW_USER, phone='08039999999'))
    assert response.status_code == 400
    assert response.get_json()['message'] == 'User with this email or phone number already exists'


def test_register_requires_all_fields(client):
    response = client.post('/api/auth/register', json={'email': 'a@b.com'})
    assert response.status_code == 400
    assert response.get_json()['status'] == 'fail'


def test_register_rejects_invalid_phone(client):
    response = client.post('/api/auth/register', json=dict(NEW_USER, phone='12345'))
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Please enter a valid Nigerian phone number'


def test_login_and_me(client, make_user):
    user = make_user()
    response = client.post('/api/auth/login', json={'email': user.email, 'password': 'password123'})
    token = response.get_json()['token']
    assert response.status_code == 200

    me = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert me.status_code == 200
    assert me.get_json()['data']['user']['email'] == user.email


def test_login_with_wrong_password(client, make_user):
    user = make_user()
    response = client.post('/api/auth/login', json={'email': user.email, 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Incorrect credentials'
    assert db.session.get(User, user.id).login_attempts == 1


def test_logout_clears_cookie(client):
    response = client.post('/api/auth/logout')
    assert response.status_code == 200
    assert 'jwt=loggedout' in response.headers['Set-Cookie']


def test_register_cannot_claim_admin_role(client):
    response = client.post('/api/auth/register', json=dict(NEW_USER, role='admin'))
    assert response.status_code == 403
    assert User.query.count() == 0


def test_register_accepts_trader_role(client):
    response = client.post('/api/auth/register', json=dict(NEW_USER, role='trader'))
    assert response.status_code == 201
    assert User.query.first().role == 'trader'


def test_verify_phone_sends_welcome_to_inbox(client, make_user, auth_headers):
    user = make_user()
    code = user.create_phone_verification_code()
    db.session.commit()

    response = client.post('/api/auth/verify-phone', json={'code': code}, headers=auth_headers(user))
    assert response.status_code == 200
    db.session.refresh(user)
    assert user.phone_verified
    assert [n.type for n in Notification.query.filter_by(user_id=user.id)] == ['welcome']
