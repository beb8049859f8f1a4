"""
Tests for Discord login, sessions and access control
"""
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from dashboard.api.app import auth

from conftest import ADMIN_ID, FIXED_NOW, USER_ID, bearer, make_token


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def discord(monkeypatch):
    """Stub the Discord token and profile endpoints"""
    calls = {'post': [], 'get': []}
    profile = {'id': USER_ID, 'username': 'listener', 'global_name': 'Listener',
               'avatar': 'abc123', 'email': 'listener@example.com'}

    def fake_post(url, data=None, timeout=None):
        calls['post'].append((url, data))
        return FakeResponse({'access_token': 'discord-token', 'token_type': 'Bearer'})

    def fake_get(url, headers=None, timeout=None):
        calls['get'].append((url, headers))
        return FakeResponse(profile)

    monkeypatch.setattr(auth.requests, 'post', fake_post)
    monkeypatch.setattr(auth.requests, 'get', fake_get)
    return calls


@pytest.mark.integration
class TestOAuthFlow:
    """Discord authorization-code login."""

    def test_login_redirects_to_discord(self, client):
        response = client.get('/api/auth/login')
        assert response.status_code == 302
        location = urlparse(response.headers['Location'])
        params = parse_qs(location.query)
        assert location.netloc == 'discord.com'
        assert params['response_type'] == ['code']
        assert params['scope'] == ['identify guilds']
        with client.session_transaction() as sess:
            assert sess['oauth_state'] == params['state'][0]

    def test_callback_issues_session(self, client, store, discord):
        with client.session_transaction() as sess:
            sess['oauth_state'] = 'expected-state'

        response = client.get('/api/auth/callback?code=abc&state=expected-state')

        assert response.status_code == 302
        assert response.headers['Location'] == 'http://localhost:3000/dashboard'
        cookies = ' '.join(response.headers.getlist('Set-Cookie'))
        assert 'access_token_cookie=' in cookies
        assert 'refresh_token_cookie=' in cookies
        assert discord['post'][0][1]['code'] == 'abc'
        assert discord['get'][0][1]['Authorization'] == 'Bearer discord-token'

        user = store.get('users', USER_ID).data
        assert user['username'] == 'listener'
        assert user['lastLogin'] == FIXED_NOW

    def test_callback_rejects_wrong_state(self, client, store, discord):
        with client.session_transaction() as sess:
            sess['oauth_state'] = 'expected-state'
        response = client.get('/api/auth/callback?code=abc&state=forged')
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid state parameter'
        assert discord['post'] == []
        assert store.get('users', USER_ID) is None

    def test_callback_requires_code(self, client):
        assert client.get('/api/auth/callback?state=x').status_code == 400

    def test_callback_reports_provider_error(self, client):
        response = client.get('/api/auth/callback?error=access_denied')
        assert response.status_code == 400
        assert 'access_denied' in response.get_json()['message']

    def test_token_exchange_failure_is_401(self, client, monkeypatch):
        def failing_post(url, data=None, timeout=None):
            return FakeResponse({'error': 'invalid_grant'}, status_code=400)

        monkeypatch.setattr(auth.requests, 'post', failing_post)
        with client.session_transaction() as sess:
            sess['oauth_state'] = 'expected-state'
        response = client.get('/api/auth/callback?code=abc&state=expected-state')
        assert response.status_code == 401


@pytest.mark.integration
class TestSession:
    """Session reads and the admin flag."""

    def test_session_requires_token(self, client):
        response = client.get('/api/auth/session')
        assert response.status_code == 401
        assert response.get_json()['code'] == 'unauthorized'

    def test_invalid_token(self, client):
        response = client.get('/api/auth/session', headers=bearer('not-a-jwt'))
        assert response.status_code == 401

    def test_admin_session(self, client, admin_headers):
        data = client.get('/api/auth/session', headers=admin_headers).get_json()
        assert data['id'] == ADMIN_ID
        assert data['isAdmin'] is True
        assert data['expires'] is not None

    def test_user_session(self, client, user_headers):
        data = client.get('/api/auth/session', headers=user_headers).get_json()
        assert data['id'] == USER_ID
        assert data['name'] == 'Listener'
        assert data['isAdmin'] is False

    def test_admin_flag_follows_configuration(self, app, client, admin_headers):
        app.config['ADMIN_USER_IDS'] = []
        data = client.get('/api/auth/session', headers=admin_headers).get_json()
        assert data['isAdmin'] is False
        response = client.get('/api/guilds/admin', headers=admin_headers)
        assert response.status_code == 403

    def test_each_request_reads_its_own_token(self, client, admin_headers, user_headers):
        assert client.get('/api/auth/session', headers=admin_headers).get_json()['id'] == ADMIN_ID
        data = client.get('/api/auth/session', headers=user_headers).get_json()
        assert data['id'] == USER_ID
        assert data['isAdmin'] is False
        assert client.get('/api/guilds/admin', headers=user_headers).status_code == 403

    def test_promoted_user_gains_admin(self, app, client, user_headers):
        app.config['ADMIN_USER_IDS'] = [ADMIN_ID, USER_ID]
        assert client.get('/api/guilds/admin', headers=user_headers).status_code == 200


@pytest.mark.integration
class TestTokenLifecycle:
    """Refresh and logout."""

    def test_refresh_issues_access_token(self, client):
        response = client.post('/api/auth/refresh', headers=bearer(make_token(USER_ID, 'Listener', refresh=True)))
        data = response.get_json()
        assert response.status_code == 200
        assert data['user']['id'] == USER_ID
        assert data['expires_in'] == 3600
        new_headers = bearer(data['access_token'])
        assert client.get('/api/auth/session', headers=new_headers).status_code == 200

    def test_refresh_rejects_access_token(self, client, user_headers):
        assert client.post('/api/auth/refresh', headers=user_headers).status_code == 401

    def test_logout_revokes_token(self, client, user_headers):
        response = client.post('/api/auth/logout', headers=user_headers)
        assert response.status_code == 200
        assert response.get_json() == {'success': True, 'message': 'Logged out successfully'}

        response = client.get('/api/auth/session', headers=user_headers)
        assert response.status_code == 401
        assert response.get_json()['code'] == 'token_revoked'
