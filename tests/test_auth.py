"""
Tests for HMAC helpers and the two bearer-token middlewares.
"""
import base64
import hashlib
import hmac
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app import state_store
from auth import (
    calculate_oauth_hmac, calculate_webhook_hmac, is_valid_shop_domain,
    verify_oauth_hmac, verify_webhook_hmac,
)
from models import deactivate_shop, get_shop_session, revoke_extension_key

SECRET = 'test-api-secret-0123456789abcdef'
SHOP = 'foo.myshopify.com'


class TestShopDomain:

    @pytest.mark.parametrize('shop', ['foo.myshopify.com', 'Foo-Bar-1.myshopify.com', '9shop.myshopify.com'])
    def test_valid(self, shop):
        assert is_valid_shop_domain(shop)

    @pytest.mark.parametrize('shop', ['', None, 'foo.myshopify.co', 'https://foo.myshopify.com', 'foo.bar.myshopify.com'])
    def test_invalid(self, shop):
        assert not is_valid_shop_domain(shop)


class TestOAuthHmac:

    def test_matches_sorted_query_string(self):
        params = {'state': 's', 'shop': SHOP, 'code': 'c', 'timestamp': '1'}
        expected = hmac.new(
            SECRET.encode(), f'code=c&shop={SHOP}&state=s&timestamp=1'.encode(), hashlib.sha256
        ).hexdigest()
        assert calculate_oauth_hmac(params, SECRET) == expected

    def test_hmac_param_is_excluded(self):
        params = {'shop': SHOP, 'code': 'c'}
        params['hmac'] = calculate_oauth_hmac(params, SECRET)
        assert verify_oauth_hmac(params, SECRET)

    def test_tampered_param_fails(self):
        params = {'shop': SHOP, 'code': 'c'}
        params['hmac'] = calculate_oauth_hmac(params, SECRET)
        params['code'] = 'other'
        assert not verify_oauth_hmac(params, SECRET)

    def test_base64_digest_is_not_accepted(self):
        params = {'shop': SHOP, 'code': 'c'}
        message = f'code=c&shop={SHOP}'.encode()
        params['hmac'] = base64.b64encode(hmac.new(SECRET.encode(), message, hashlib.sha256).digest()).decode()
        assert not verify_oauth_hmac(params, SECRET)


class TestWebhookHmac:

    def test_matches_base64_of_raw_body(self):
        body = b'{"id": 1}'
        expected = base64.b64encode(hmac.new(SECRET.encode(), body, hashlib.sha256).digest()).decode()
        assert calculate_webhook_hmac(body, SECRET) == expected
        assert verify_webhook_hmac(body, expected, SECRET)

    def test_str_body_is_utf8(self):
        assert calculate_webhook_hmac('{"name": "ñ"}', SECRET) == calculate_webhook_hmac('{"name": "ñ"}'.encode('utf-8'), SECRET)

    def test_missing_header(self):
        assert not verify_webhook_hmac(b'{}', None, SECRET)

    def test_hex_digest_is_not_accepted(self):
        body = b'{}'
        hex_digest = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
        assert not verify_webhook_hmac(body, hex_digest, SECRET)


class TestSessionTokenMiddleware:

    def test_missing_header(self, client, installed_shop):
        response = client.get('/api/app/extension-keys')
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Missing authorization header'

    def test_not_bearer(self, client, installed_shop):
        response = client.get('/api/app/extension-keys', headers={'Authorization': 'Basic abc'})
        assert response.status_code == 401

    def test_garbage_token(self, client, installed_shop):
        response = client.get('/api/app/extension-keys', headers={'Authorization': 'Bearer not-a-jwt'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid session token'

    def test_missing_dest(self, client, installed_shop, make_session_token):
        token = make_session_token(dest=None)
        response = client.get('/api/app/extension-keys', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid token format'

    def test_unknown_shop(self, client, installed_shop, make_session_token):
        token = make_session_token(shop='other.myshopify.com')
        response = client.get('/api/app/extension-keys', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Shop not installed'

    def test_uninstalled_shop(self, client, installed_shop, session_headers):
        deactivate_shop(SHOP)
        response = client.get('/api/app/extension-keys', headers=session_headers)
        assert response.status_code == 401

    def test_signature_and_expiry_ignored_by_default(self, client, installed_shop, make_session_token):
        token = make_session_token(exp=1)
        response = client.get('/api/app/extension-keys', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200

    def test_strict_mode_rejects_foreign_signature(self, app, client, installed_shop, make_session_token):
        app.config['VERIFY_SESSION_TOKEN'] = True
        response = client.get('/api/app/extension-keys', headers={'Authorization': f'Bearer {make_session_token()}'})
        assert response.status_code == 401

    def test_strict_mode_accepts_app_signature(self, app, client, installed_shop, make_session_token):
        app.config['VERIFY_SESSION_TOKEN'] = True
        token = make_session_token(secret=SECRET)
        response = client.get('/api/app/extension-keys', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200


class TestExtensionKeyMiddleware:

    def test_missing_header(self, client, extension_key):
        response = client.get('/api/sender-config')
        assert response.status_code == 401

    def test_wrong_prefix(self, client, extension_key):
        response = client.get('/api/sender-config', headers={'Authorization': 'Bearer pk_123'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid access key format'

    def test_unknown_key(self, client, extension_key):
        response = client.get('/api/sender-config', headers={'Authorization': 'Bearer sk_unknown'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid or revoked access key'

    def test_valid_key_stamps_last_use(self, client, extension_key, key_headers):
        assert extension_key.last_used_at is None
        response = client.get('/api/sender-config', headers=key_headers)
        assert response.status_code == 404
        assert extension_key.last_used_at is not None

    def test_revoked_key(self, client, extension_key, key_headers):
        assert client.get('/api/sender-config', headers=key_headers).status_code == 404
        revoke_extension_key(extension_key.access_key, SHOP)
        for method, path in [('get', '/api/sender-config'), ('post', '/api/sender-config'),
                             ('get', '/api/orders/pending'), ('post', '/api/orders/update-tracking')]:
            response = getattr(client, method)(path, headers=key_headers, json={})
            assert response.status_code == 401, path

    def test_key_of_uninstalled_shop(self, client, extension_key, key_headers):
        deactivate_shop(SHOP)
        response = client.get('/api/orders/pending', headers=key_headers)
        assert response.status_code == 401


class TestNonAsciiSignatures:

    def test_oauth_hmac_with_non_ascii_is_rejected(self):
        assert not verify_oauth_hmac({'shop': SHOP, 'code': 'c', 'hmac': 'café'}, SECRET)

    def test_webhook_hmac_with_non_ascii_is_rejected(self):
        assert not verify_webhook_hmac(b'{}', 'café', SECRET)

    def test_callback_with_non_ascii_hmac_is_403(self, client):
        state_store.put(f'state_{SHOP}', 'abc123')
        params = {'shop': SHOP, 'code': 'c', 'state': 'abc123', 'hmac': 'café'}
        response = client.get('/api/auth/callback', query_string=params)
        assert response.status_code == 403

    def test_uninstall_with_non_ascii_hmac_is_403(self, client, installed_shop):
        headers = {'X-Shopify-Hmac-Sha256': 'café', 'X-Shopify-Shop-Domain': SHOP}
        response = client.post('/api/webhooks/app/uninstalled', data='{}', headers=headers)
        assert response.status_code == 403
        assert get_shop_session(SHOP) is not None


def test_session_token_store_failure_is_401(client, session_headers):
    with patch('auth.get_shop_session', side_effect=SQLAlchemyError('database is down')):
        response = client.get('/api/app/extension-keys', headers=session_headers)
    assert response.status_code == 401
    assert response.get_json() == {'success': False, 'error': 'Authentication failed'}
