"""Registration, login, profile and account suspension"""
from app import db, User, Wallet, AuditLog


def register(client, **overrides):
    payload = {
        'username': 'maria_k',
        'email': 'maria@mailhost.io',
        'password': 'Secur3Pass',
        'first_name': 'Maria',
        'country': 'Portugal'
    }
    payload.update(overrides)
    return client.post('/api/register', json=payload)


def test_register_creates_user_wallet_and_session(client):
    response = register(client)
    assert response.status_code == 201
    body = response.get_json()
    assert body['user']['username'] == 'maria_k'
    assert body['user']['country'] == 'Portugal'
    assert body['user']['user_type'] == 'user'

    user = User.query.filter_by(username='maria_k').first()
    assert Wallet.query.filter_by(user_id=user.id).count() == 1

    profile = client.get('/api/profile')
    assert profile.status_code == 200
    assert profile.get_json()['wallet']['available_balance'] == 0


def test_register_rejects_weak_password(client):
    response = register(client, password='password')
    assert response.status_code == 400
    assert 'uppercase' in response.get_json()['error']


def test_register_rejects_bad_username(client):
    response = register(client, username='no spaces!')
    assert response.status_code == 400


def test_register_rejects_duplicate_email(client, make_user):
    make_user('maria')
    response = register(client, email='MARIA@mailhost.io')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Email already registered'


def test_login_and_logout(client, make_user):
    make_user('tomas', password='Str0ngPass')
    response = client.post('/api/login', json={'email': 'tomas@mailhost.io', 'password': 'Str0ngPass'})
    assert response.status_code == 200
    assert response.get_json()['message'] == 'Login successful'
    assert client.get('/api/profile').status_code == 200

    assert AuditLog.query.filter_by(event_type='login_success').count() == 1

    client.post('/api/logout')
    assert client.get('/api/profile').status_code == 401


def test_login_wrong_password_is_generic(client, make_user):
    make_user('tomas', password='Str0ngPass')
    response = client.post('/api/login', json={'email': 'tomas@mailhost.io', 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Invalid credentials'

    unknown = client.post('/api/login', json={'email': 'ghost@mailhost.io', 'password': 'nope'})
    assert unknown.get_json()['error'] == 'Invalid credentials'


def test_login_locks_out_after_repeated_failures(client, make_user):
    make_user('tomas', password='Str0ngPass')
    for _ in range(5):
        assert client.post('/api/login', json={'email': 'tomas@mailhost.io', 'password': 'bad'}).status_code == 401

    response = client.post('/api/login', json={'email': 'tomas@mailhost.io', 'password': 'Str0ngPass'})
    assert response.status_code == 429


def test_suspended_user_cannot_login(client, make_user):
    user = make_user('tomas', password='Str0ngPass')
    user.is_suspended = True
    user.suspension_reason = 'Fake reviews'
    db.session.commit()

    response = client.post('/api/login', json={'email': 'tomas@mailhost.io', 'password': 'Str0ngPass'})
    assert response.status_code == 403
    assert 'Fake reviews' in response.get_json()['error']


def test_update_profile_validates_avatar(client, make_user, login):
    login(client, make_user('tomas'))
    bad = client.put('/api/profile', json={'avatar_url': 'ftp://example.com/a.png'})
    assert bad.status_code == 400

    response = client.put('/api/profile', json={'bio': 'I test apps', 'last_name': 'Silva'})
    assert response.status_code == 200
    assert response.get_json()['user']['bio'] == 'I test apps'


def test_admin_suspend_and_unsuspend(client, make_user, login):
    admin = make_user('boss', is_admin=True)
    worker = make_user('worker')
    login(client, admin)

    assert client.post(f'/api/admin/users/{worker.id}/suspend', json={}).status_code == 400
    assert client.post(f'/api/admin/users/{admin.id}/suspend', json={'reason': 'x'}).status_code == 400

    response = client.post(f'/api/admin/users/{worker.id}/suspend', json={'reason': 'Spam'})
    assert response.status_code == 200
    assert response.get_json()['user']['user_type'] == 'suspended'

    worker_client = client.application.test_client()
    login(worker_client, worker)
    blocked = worker_client.get('/api/profile')
    assert blocked.status_code == 403
    assert 'Spam' in blocked.get_json()['error']

    assert client.post(f'/api/admin/users/{worker.id}/unsuspend').status_code == 200
    assert worker_client.get('/api/profile').status_code == 200


def test_admin_routes_require_admin(client, make_user, login):
    login(client, make_user('worker'))
    assert client.get('/api/admin/users').status_code == 403
    assert client.application.test_client().get('/api/admin/users').status_code == 401


def test_admin_user_search(client, make_user, login):
    login(client, make_user('boss', is_admin=True))
    make_user('ana_designer')
    make_user('bruno')

    response = client.get('/api/admin/users?search=ana')
    assert response.status_code == 200
    assert [u['username'] for u in response.get_json()['users']] == ['ana_designer']


def test_categories_are_seeded(client):
    response = client.get('/api/categories')
    slugs = {c['slug'] for c in response.get_json()}
    assert {'data-entry', 'social-media', 'writing', 'other'} <= slugs


def test_security_headers(client):
    response = client.get('/api/health')
    assert response.headers['X-Frame-Options'] == 'DENY'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
