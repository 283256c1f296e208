import requests

import app as app_module
from admin_auth import COOKIE_NAME, create_token

from tests.conftest import ADMIN_PASSWORD, SCRIPT_SECRET, SESSION_SECRET
from tests.helpers import FakeResponse


def set_cookies(response):
    return response.headers.getlist('Set-Cookie')


# --- login / logout ---

def test_login_sets_session_cookie(client):
    response = client.post('/api/admin/login', json={'password': ADMIN_PASSWORD})
    assert response.status_code == 200
    assert response.get_json() == {'ok': True}

    [cookie] = set_cookies(response)
    assert cookie.startswith(f"{COOKIE_NAME}=")
    assert 'HttpOnly' in cookie
    assert 'SameSite=Lax' in cookie
    assert 'Path=/' in cookie
    assert f"Max-Age={app_module.ADMIN_SESSION_MAX_AGE}" in cookie
    assert 'Secure' not in cookie


def test_login_cookie_is_secure_in_production(client, monkeypatch):
    monkeypatch.setattr(app_module, 'SECURE_COOKIES', True)
    response = client.post('/api/admin/login', json={'password': ADMIN_PASSWORD})
    assert 'Secure' in set_cookies(response)[0]


def test_login_wrong_password(client):
    response = client.post('/api/admin/login', json={'password': 'sbagliata'})
    assert response.status_code == 401
    assert response.get_json() == {'ok': False, 'error': 'Password errata.'}
    assert set_cookies(response) == []


def test_login_empty_password(client):
    response = client.post('/api/admin/login', json={})
    assert response.status_code == 400


def test_login_without_configuration(client, monkeypatch):
    monkeypatch.delenv('ADMIN_SESSION_SECRET')
    response = client.post('/api/admin/login', json={'password': ADMIN_PASSWORD})
    assert response.status_code == 500
    assert response.get_json()['error'] == 'ADMIN_SESSION_SECRET mancante'

    monkeypatch.delenv('ADMIN_PASSWORD')
    response = client.post('/api/admin/login', json={'password': ADMIN_PASSWORD})
    assert response.status_code == 500
    assert response.get_json()['error'] == 'ADMIN_PASSWORD mancante'


def test_logout_clears_cookie(admin_client):
    response = admin_client.post('/api/admin/logout')
    assert response.status_code == 200
    [cookie] = set_cookies(response)
    assert cookie.startswith(f"{COOKIE_NAME}=;")
    assert 'Max-Age=0' in cookie
    assert 'HttpOnly' in cookie


# --- auth gate ---

def test_admin_routes_require_session(client, script):
    for method, path in [('get', '/api/admin/bookings'), ('post', '/api/admin/bookings'),
                         ('get', '/api/admin/settings'), ('post', '/api/admin/settings')]:
        response = getattr(client, method)(path, json={})
        assert response.status_code == 401
        assert response.get_json() == {'ok': False, 'error': 'Non autorizzato'}
    assert script.calls == []


def test_forged_cookie_is_rejected(client, script):
    client.set_cookie(COOKIE_NAME, create_token('not-the-server-secret'))
    assert client.get('/api/admin/bookings').status_code == 401

    client.set_cookie(COOKIE_NAME, create_token(SESSION_SECRET))
    script.handler = lambda call: FakeResponse({'ok': True, 'rows': [], 'count': 0})
    assert client.get('/api/admin/bookings').status_code == 200


def test_admin_gate_without_session_secret(admin_client, monkeypatch, script):
    monkeypatch.delenv('ADMIN_SESSION_SECRET')
    response = admin_client.get('/api/admin/bookings')
    assert response.status_code == 500
    assert response.get_json()['error'] == 'ADMIN_SESSION_SECRET mancante'


# --- bookings list ---

def test_list_bookings(admin_client, script):
    rows = [['Mario', '333', 'RITIRO', '2025-12-30', '12:00', 1, 0, 0, 50, '', 'NUOVA', '', '']]
    script.handler = lambda call: FakeResponse({'ok': True, 'rows': rows, 'count': 1})
    response = admin_client.get('/api/admin/bookings')
    assert response.status_code == 200
    assert response.get_json() == {'ok': True, 'rows': rows, 'count': 1}


def test_list_bookings_non_json(admin_client, script):
    script.handler = lambda call: FakeResponse(text='<html>login</html>')
    response = admin_client.get('/api/admin/bookings')
    assert response.status_code == 500
    body = response.get_json()
    assert body['error'] == 'Risposta non JSON'
    assert body['detail']['raw'] == '<html>login</html>'


def test_list_bookings_upstream_auth_problem(admin_client, script):
    script.handler = lambda call: FakeResponse({'ok': False, 'error': 'unauthorized'})
    assert admin_client.get('/api/admin/bookings').status_code == 401


# --- status update ---

def test_status_update_rejects_unknown_status(admin_client, script):
    response = admin_client.post('/api/admin/bookings', json={
        'action': 'updateStatus', 'stato': 'IN_FORNO', 'timestampISO': '2025-12-20T10:00:00.000Z',
    })
    assert response.status_code == 400
    assert response.get_json()['ok'] is False
    assert script.calls == []


def test_status_update_requires_an_identifier(admin_client, script):
    response = admin_client.post('/api/admin/bookings', json={'stato': 'CONFERMATA', 'telefono': '333'})
    assert response.status_code == 400
    assert script.calls == []


def test_status_must_match_exactly(admin_client, script):
    response = admin_client.post('/api/admin/bookings', json={
        'action': 'updateStatus', 'stato': 'confermata', 'timestampISO': '2025-12-20T10:00:00.000Z',
    })
    assert response.status_code == 400
    assert response.get_json()['error'].startswith('Stato non valido')
    assert script.calls == []


def test_status_update_with_timestamp(admin_client, script):
    response = admin_client.post('/api/admin/bookings', json={
        'action': 'updateStatus', 'stato': 'CONFERMATA', 'timestampISO': '2025-12-20T10:00:00.000Z',
    })
    assert response.status_code == 200
    assert response.get_json()['transport'] == 'POST'
    assert script.calls[0]['json']['stato'] == 'CONFERMATA'


def test_status_update_composite_key_on_both_attempts(admin_client, script):
    def handler(call):
        if call['method'] == 'POST':
            return requests.ConnectionError('doPost unavailable')
        return FakeResponse({'ok': True})

    script.handler = handler
    response = admin_client.post('/api/admin/bookings', json={
        'action': 'updateStatus',
        'stato': 'ANNULLATA',
        'telefono': '3331234567',
        'dataISO': '2025-12-30',
        'ora': '12:30',
    })

    assert response.status_code == 200
    assert response.get_json()['transport'] == 'GET'
    assert [c['method'] for c in script.calls] == ['POST', 'GET']
    post, get = script.calls
    for sent in (post['json'], get['params']):
        assert sent['telefono'] == '3331234567'
        assert sent['dataISO'] == '2025-12-30'
        assert sent['ora'] == '12:30'
        assert sent['stato'] == 'ANNULLATA'
        assert sent['secret'] == SCRIPT_SECRET


def test_status_update_total_failure(admin_client, script):
    script.handler = lambda call: FakeResponse({'ok': False, 'error': 'Riga non trovata'})
    response = admin_client.post('/api/admin/bookings', json={
        'stato': 'CONSEGNATA', 'timestampISO': '2025-12-20T10:00:00.000Z',
    })
    assert response.status_code == 500
    assert response.get_json()['error'] == 'Riga non trovata'
    assert len(script.calls) == 2


def test_unknown_admin_action(admin_client, script):
    response = admin_client.post('/api/admin/bookings', json={'action': 'delete'})
    assert response.status_code == 400
    assert script.calls == []


# --- settings ---

def test_admin_set_settings_loose_boolean(admin_client, script):
    script.handler = lambda call: FakeResponse({'ok': True, 'settings': {'bookings_open': False}})
    response = admin_client.post('/api/admin/settings', json={'value': 'off'})
    assert response.status_code == 200
    assert response.get_json()['bookings_open'] is False
    assert script.calls[0]['json'] == {'action': 'setBookingsOpen', 'value': False, 'secret': SCRIPT_SECRET}


def test_admin_set_settings_requires_value(admin_client, script):
    response = admin_client.post('/api/admin/settings', json={'something': 'else'})
    assert response.status_code == 400
    assert "value" in response.get_json()['error']
    assert script.calls == []


def test_admin_get_settings(admin_client, script):
    script.handler = lambda call: FakeResponse({'ok': True, 'bookingsOpen': 'true'})
    response = admin_client.get('/api/admin/settings')
    assert response.get_json()['bookings_open'] is True
