from conftest import PASSWORD
from models import User, db


def login(client, username, password=PASSWORD):
    return client.post('/api/auth/login', json={'username': username, 'password': password})


def test_login_returns_token_and_profile(client, director, school):
    response = login(client, 'director')
    assert response.status_code == 200
    data = response.get_json()
    assert data['token']
    assert data['user']['role'] == 'Director'
    assert data['school']['id'] == school.id
    assert data['subscription']['planId'] == 'ecole_publique'
    assert data['offline_access'] is True
    assert db.session.get(User, director.id).last_login_at is not None


def test_session_cookie_authenticates_following_requests(client, director):
    login(client, 'director')
    response = client.get('/api/auth/me')
    assert response.status_code == 200
    assert response.get_json()['user']['username'] == 'director'


def test_bad_credentials_are_rejected(client, director):
    response = login(client, 'director', 'wrong-password')
    assert response.status_code == 401
    assert response.get_json()['success'] is False
    assert login(client, 'nobody').status_code == 401


def test_missing_fields_fail_validation(client):
    response = client.post('/api/auth/login', json={'username': 'director'})
    assert response.status_code == 400
    assert 'password' in response.get_json()['errors']


def test_inactive_user_cannot_log_in(client, director):
    director.is_active = False
    db.session.commit()
    assert login(client, 'director').status_code == 403


def test_blocked_school_cannot_log_in(client, director, school):
    school.is_blocked = True
    db.session.commit()
    response = login(client, 'director')
    assert response.status_code == 403
    assert 'suspended' in response.get_json()['message']


def test_bearer_token_authenticates(client, auth, teacher):
    response = client.get('/api/auth/me', headers=auth(teacher))
    assert response.status_code == 200
    assert response.get_json()['user']['id'] == teacher.id


def test_invalid_bearer_token_is_unauthorized(client):
    response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-token'})
    assert response.status_code == 401


def test_logout_clears_session(client, director):
    login(client, 'director')
    assert client.post('/api/auth/logout').status_code == 200
    assert client.get('/api/auth/me').status_code == 401


def test_change_password(client, auth, director):
    director.password_change_required = True
    db.session.commit()
    headers = auth(director)

    response = client.post('/api/auth/change-password', headers=headers, json={
        'current_password': 'wrong', 'new_password': 'nouveau1', 'confirm_password': 'nouveau1'})
    assert response.status_code == 400

    response = client.post('/api/auth/change-password', headers=headers, json={
        'current_password': PASSWORD, 'new_password': 'nouveau1', 'confirm_password': 'different'})
    assert response.status_code == 400
    assert 'confirm_password' in response.get_json()['errors']

    response = client.post('/api/auth/change-password', headers=headers, json={
        'current_password': PASSWORD, 'new_password': 'nouveau1', 'confirm_password': 'nouveau1'})
    assert response.status_code == 200
    assert db.session.get(User, director.id).password_change_required is False
    assert login(client, 'director', 'nouveau1').status_code == 200


def test_role_restrictions(client, auth, student, school_class):
    response = client.get('/api/classes', headers=auth(student))
    assert response.status_code == 403


def test_site_admin_passes_role_checks(client, auth, site_admin, school, school_class):
    response = client.get(f'/api/classes?school_id={school.id}', headers=auth(site_admin))
    assert response.status_code == 200
    assert [c['id'] for c in response.get_json()['classes']] == [school_class.id]


def test_security_headers_are_set(client):
    response = client.get('/health')
    assert response.headers['X-Frame-Options'] == 'SAMEORIGIN'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert 'no-store' in response.headers['Cache-Control']
