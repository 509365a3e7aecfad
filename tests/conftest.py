"""
Shared fixtures. Environment is set before ``app`` is imported so the
module-level config picks up test values and an in-memory database.
"""
import os

os.environ['SHOPIFY_API_KEY'] = 'test-api-key'
os.environ['SHOPIFY_API_SECRET'] = 'test-api-secret-0123456789abcdef'
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.pop('RAILWAY_PUBLIC_DOMAIN', None)
os.environ.pop('VERIFY_SESSION_TOKEN', None)

from unittest.mock import MagicMock

import jwt
import pytest

from app import app as flask_app, state_store
from auth import calculate_oauth_hmac, calculate_webhook_hmac
from models import db, save_shop_session, create_extension_key

SECRET = 'test-api-secret-0123456789abcdef'
SHOP = 'foo.myshopify.com'


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    flask_app.config['VERIFY_SESSION_TOKEN'] = False
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    state_store.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def installed_shop(app):
    return save_shop_session(SHOP, 'shpat_test_token', 'read_orders,read_fulfillments')


@pytest.fixture
def extension_key(installed_shop):
    return create_extension_key(SHOP, 'Test key')


@pytest.fixture
def make_session_token():
    def _make(shop=SHOP, secret='some-other-secret-0123456789abcdef', **claims):
        payload = {'dest': f'https://{shop}', 'aud': 'test-api-key'}
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm='HS256')
    return _make


@pytest.fixture
def session_headers(installed_shop, make_session_token):
    return {'Authorization': f'Bearer {make_session_token()}'}


@pytest.fixture
def key_headers(extension_key):
    return {'Authorization': f'Bearer {extension_key.access_key}'}


@pytest.fixture
def sign_query():
    def _sign(params, secret=SECRET):
        signed = dict(params)
        signed['hmac'] = calculate_oauth_hmac(params, secret)
        return signed
    return _sign


@pytest.fixture
def webhook_headers():
    def _headers(body, shop=SHOP, secret=SECRET):
        return {
            'Content-Type': 'application/json',
            'X-Shopify-Hmac-Sha256': calculate_webhook_hmac(body, secret),
            'X-Shopify-Shop-Domain': shop,
        }
    return _headers


@pytest.fixture
def fake_response():
    def _response(status_code=200, json_data=None, text=''):
        response = MagicMock()
        response.status_code = status_code
        response.ok = 200 <= status_code < 300
        response.text = text
        if json_data is None:
            response.json.side_effect = ValueError('No JSON')
        else:
            response.json.return_value = json_data
        return response
    return _response
