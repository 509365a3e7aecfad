import base64
import hashlib
import hmac
import logging
import re
from functools import wraps

import jwt
from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from models import ACCESS_KEY_PREFIX, get_shop_session, validate_extension_key

logger = logging.getLogger(__name__)

SHOP_DOMAIN_RE = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$')


def is_valid_shop_domain(shop):
    return bool(shop) and SHOP_DOMAIN_RE.match(shop) is not None


# --- HMAC ---
# OAuth redirects and webhooks are signed differently. Keep the two apart.

def calculate_oauth_hmac(params, secret):
    """Hex HMAC-SHA256 over the sorted key=value pairs of a query, minus ``hmac``."""
    message = '&'.join(f"{key}={params[key]}" for key in sorted(params) if key != 'hmac')
    return hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).hexdigest()


def verify_oauth_hmac(params, secret):
    received = params.get('hmac')
    if not received or not secret:
        return False
    return hmac.compare_digest(calculate_oauth_hmac(params, secret).encode(), received.encode('utf-8'))


def calculate_webhook_hmac(data, secret):
    """Base64 HMAC-SHA256 over a raw webhook body."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_hmac(data, hmac_header, secret):
    if not hmac_header or not secret:
        return False
    return hmac.compare_digest(calculate_webhook_hmac(data, secret).encode(), hmac_header.encode('utf-8'))


# --- BEARER AUTH ---

def _unauthorized(message):
    return jsonify({'success': False, 'error': message}), 401


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def decode_session_token(token):
    """Decodes an App Bridge session token.

    Unless VERIFY_SESSION_TOKEN is on, the signature and expiry are NOT
    checked, so any well-formed token naming an installed shop is accepted.
    """
    if current_app.config.get('VERIFY_SESSION_TOKEN'):
        return jwt.decode(
            token,
            current_app.config['SHOPIFY_API_SECRET'],
            algorithms=['HS256'],
            audience=current_app.config['SHOPIFY_API_KEY'],
        )
    return jwt.decode(token, options={'verify_signature': False})


def require_session_token(f):
    """Gates routes called by the embedded admin page."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return _unauthorized('Missing authorization header')

        try:
            payload = decode_session_token(token)
        except jwt.InvalidTokenError as e:
            logger.warning("Session token verification failed: %s", e)
            return _unauthorized('Invalid session token')

        dest = payload.get('dest') if isinstance(payload, dict) else None
        if not dest:
            return _unauthorized('Invalid token format')

        shop_domain = dest.replace('https://', '', 1)
        try:
            shop = get_shop_session(shop_domain)
        except SQLAlchemyError:
            logger.exception("Session token shop lookup failed")
            return _unauthorized('Authentication failed')

        if not shop:
            return _unauthorized('Shop not installed')

        g.shop = shop.shop_domain
        g.access_token = shop.access_token
        g.auth_method = 'session_token'
        return f(*args, **kwargs)
    return decorated


def require_extension_key(f):
    """Gates routes called by the browser extension."""
    @wraps(f)
    def decorated(*args, **kwargs):
        access_key = _bearer_token()
        if not access_key:
            return _unauthorized('Missing authorization header')
        if not access_key.startswith(ACCESS_KEY_PREFIX):
            return _unauthorized('Invalid access key format')

        try:
            key = validate_extension_key(access_key)
        except SQLAlchemyError:
            logger.exception("Extension key verification failed")
            return _unauthorized('Authentication failed')

        if not key:
            return _unauthorized('Invalid or revoked access key')

        g.shop = key.shop_domain
        g.access_token = key.shop.access_token
        g.auth_method = 'extension_key'
        return f(*args, **kwargs)
    return decorated
