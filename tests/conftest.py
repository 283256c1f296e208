import pytest

import app as app_module
import gateway

from tests.helpers import ScriptStub, FakeResponse, action_of

SCRIPT_URL = 'https://script.example.com/macros/s/abc/exec'
SCRIPT_SECRET = 'script-secret'
SESSION_SECRET = 'session-secret'
ADMIN_PASSWORD = 'pannello2025'


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setenv('GOOGLE_SCRIPT_URL', SCRIPT_URL)
    monkeypatch.setenv('GOOGLE_SCRIPT_SECRET', SCRIPT_SECRET)
    monkeypatch.setenv('ADMIN_SESSION_SECRET', SESSION_SECRET)
    monkeypatch.setenv('ADMIN_PASSWORD', ADMIN_PASSWORD)
    monkeypatch.delenv('BOOKING_WEBAPP_URL', raising=False)
    monkeypatch.delenv('OPENAI_API_KEY', raising=False)


@pytest.fixture
def script(monkeypatch):
    """Outbound calls to the spreadsheet script, answered by default with bookings open"""
    stub = ScriptStub()

    def default(call):
        if action_of(call) == 'getSettings':
            return FakeResponse({'ok': True, 'settings': {'bookings_open': True}})
        return FakeResponse({'ok': True})

    stub.handler = default
    monkeypatch.setattr(gateway.requests, 'request', stub)
    return stub


@pytest.fixture
def client(configured):
    app_module.app.config['TESTING'] = True
    return app_module.app.test_client()


@pytest.fixture
def admin_client(client):
    response = client.post('/api/admin/login', json={'password': ADMIN_PASSWORD})
    assert response.status_code == 200
    return client
