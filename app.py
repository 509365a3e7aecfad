import os
import sys
import json
import ssl
import logging
import secrets
from datetime import datetime

import shopify
from dotenv import load_dotenv
from flask import Flask, request, jsonify, render_template, redirect, g
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from auth import (
    is_valid_shop_domain, verify_oauth_hmac, verify_webhook_hmac,
    require_session_token, require_extension_key,
)
from models import (
    db, init_database, save_shop_session, deactivate_shop, get_active_shops_count,
    create_extension_key, get_shop_extension_keys, revoke_extension_key,
    save_sender_config, get_sender_config, delete_shop_data,
)
from oauth_state import OAuthStateStore, start_state_sweeper
from shopify_client import API_VERSION, DEFAULT_TRACKING_COMPANY, ShopifyClient, ShopifyAPIError, format_order

load_dotenv()

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# --- PUBLIC APP CONFIG ---
SHOPIFY_API_KEY = os.getenv('SHOPIFY_API_KEY')
SHOPIFY_API_SECRET = os.getenv('SHOPIFY_API_SECRET')
SCOPES = ['read_orders', 'read_fulfillments']
PUBLIC_DOMAIN = os.getenv('RAILWAY_PUBLIC_DOMAIN')
APP_URL = f"https://{PUBLIC_DOMAIN}" if PUBLIC_DOMAIN else 'http://localhost:3000'
PORT = int(os.getenv('PORT', 3000))

INITIAL_KEY_NAME = 'Access Key Inicial'
DEFAULT_KEY_NAME = 'New Access Key'
WEBHOOK_TOPICS = ['app/uninstalled']

app.config['SHOPIFY_API_KEY'] = SHOPIFY_API_KEY
app.config['SHOPIFY_API_SECRET'] = SHOPIFY_API_SECRET
app.config['VERIFY_SESSION_TOKEN'] = os.getenv('VERIFY_SESSION_TOKEN', 'false').lower() in ('1', 'true', 'yes')

# --- DATABASE CONFIG ---
database_url = os.getenv('DATABASE_URL', 'sqlite:///database.sqlite')
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
elif database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+pg8000://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
if database_url.startswith('postgresql') and os.getenv('DATABASE_SSL', 'true').lower() != 'false':
    # Managed Postgres presents certificates we can't verify
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {'connect_args': {'ssl_context': ssl._create_unverified_context()}}

db.init_app(app)

# Initialize Shopify Library
shopify.Session.setup(api_key=SHOPIFY_API_KEY, secret=SHOPIFY_API_SECRET)

state_store = OAuthStateStore()

# --- HELPERS ---

def error_response(message, status=500, details=None):
    body = {'success': False, 'error': message}
    if details is not None:
        body['details'] = details
    return jsonify(body), status


def state_key(shop_domain):
    return f"state_{shop_domain}"


def register_webhooks(shop_domain, access_token):
    """Subscribes the shop to our webhooks. Failures are logged, never raised."""
    client = ShopifyClient(shop_domain, access_token)
    for topic in WEBHOOK_TOPICS:
        address = f"{APP_URL}/api/webhooks/{topic}"
        try:
            client.create_webhook(topic, address)
            logger.info("Webhook registered: %s", topic)
        except ShopifyAPIError as e:
            if e.status_code == 422:
                logger.info("Webhook %s already exists", topic)
            else:
                logger.error("Error registering webhook %s: %s", topic, e.details)


def webhook_is_authentic():
    """Checks the base64 HMAC Shopify puts on every webhook delivery."""
    hmac_header = request.headers.get('X-Shopify-Hmac-Sha256')
    if verify_webhook_hmac(request.get_data(), hmac_header, app.config['SHOPIFY_API_SECRET']):
        return True
    logger.warning("HMAC verification failed on %s", request.path)
    return False


def webhook_payload():
    """The webhook body as a dict, or None when it isn't a JSON object."""
    try:
        payload = json.loads(request.get_data() or b'{}')
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None

# --- AUTHENTICATION ROUTES (OAuth) ---

@app.route('/api/auth')
def auth():
    shop_url = request.args.get('shop')
    logger.info("OAuth started for shop: %s", shop_url)

    if not shop_url:
        return "Missing shop parameter", 400
    if not is_valid_shop_domain(shop_url):
        return "Invalid shop parameter", 400

    state = secrets.token_hex(16)
    redirect_uri = f"{APP_URL}/api/auth/callback"
    state_store.put(state_key(shop_url), state)

    session = shopify.Session(shop_url, API_VERSION)
    perm_url = session.create_permission_url(scope=SCOPES, redirect_uri=redirect_uri, state=state)
    logger.info("Redirecting %s to OAuth with redirect URI %s", shop_url, redirect_uri)
    return redirect(perm_url)


@app.route('/api/auth/callback')
def callback():
    params = request.args.to_dict()
    shop_url = params.get('shop')

    pending = state_store.get(state_key(shop_url))
    if not pending or pending.state != params.get('state'):
        logger.warning("OAuth callback with invalid state for %s", shop_url)
        return "Invalid state parameter", 403

    if not verify_oauth_hmac(params, app.config['SHOPIFY_API_SECRET']):
        logger.warning("OAuth callback with invalid HMAC for %s", shop_url)
        return "HMAC validation failed", 403

    state_store.delete(state_key(shop_url))

    try:
        client = ShopifyClient(shop_url)
        token, scope = client.request_access_token(
            app.config['SHOPIFY_API_KEY'], app.config['SHOPIFY_API_SECRET'], params.get('code'))

        save_shop_session(shop_url, token, scope)
        create_extension_key(shop_url, INITIAL_KEY_NAME)
        register_webhooks(shop_url, token)

        return redirect(f"https://{shop_url}/admin/apps/{app.config['SHOPIFY_API_KEY']}")
    except Exception as e:
        logger.error("Error in OAuth callback for %s: %s", shop_url, getattr(e, 'details', e))
        return "Error during authentication", 500

# --- EMBEDDED APP ROUTES (session token) ---

@app.route('/api/app/extension-keys', methods=['GET'])
@require_session_token
def list_extension_keys():
    try:
        keys = get_shop_extension_keys(g.shop)
        return jsonify({'success': True, 'keys': [k.to_dict() for k in keys]})
    except Exception:
        logger.exception("Error fetching extension keys for %s", g.shop)
        return error_response('Error fetching access keys')


@app.route('/api/app/extension-keys', methods=['POST'])
@require_session_token
def new_extension_key():
    data = request.get_json(silent=True) or {}
    try:
        key = create_extension_key(g.shop, data.get('name') or DEFAULT_KEY_NAME)
        body = key.to_dict()
        body.pop('lastUsedAt')
        return jsonify({'success': True, 'key': body})
    except Exception:
        logger.exception("Error creating extension key for %s", g.shop)
        return error_response('Error creating access key')


@app.route('/api/app/extension-keys/<access_key>', methods=['DELETE'])
@require_session_token
def delete_extension_key(access_key):
    try:
        revoke_extension_key(access_key, g.shop)
        return jsonify({'success': True, 'message': 'Access key revoked'})
    except Exception:
        logger.exception("Error revoking extension key for %s", g.shop)
        return error_response('Error revoking access key')


@app.route('/api/app/sender-config', methods=['GET'])
@require_session_token
def admin_sender_config():
    try:
        config = get_sender_config(g.shop)
        return jsonify({'success': True, 'config': config.to_dict() if config else {}})
    except Exception:
        logger.exception("Error fetching sender config for %s", g.shop)
        return error_response('Error fetching configuration')

# --- EXTENSION ROUTES (access key) ---

@app.route('/api/sender-config', methods=['POST'])
@require_extension_key
def write_sender_config():
    config = request.get_json(silent=True)
    if not isinstance(config, dict):
        return error_response('Config must be a JSON object', 400)
    try:
        save_sender_config(g.shop, config)
        return jsonify({'success': True, 'message': 'Configuration saved'})
    except Exception:
        logger.exception("Error saving sender config for %s", g.shop)
        return error_response('Error saving configuration')


@app.route('/api/sender-config', methods=['GET'])
@require_extension_key
def extension_sender_config():
    try:
        config = get_sender_config(g.shop)
        if not config:
            return error_response(
                'Configuration not found. Set up the sender in the Shopify app first.', 404)
        return jsonify({'success': True, 'config': config.sender_fields()})
    except Exception:
        logger.exception("Error fetching sender config for %s", g.shop)
        return error_response('Error fetching configuration')


@app.route('/api/orders/pending', methods=['GET'])
@require_extension_key
def pending_orders():
    try:
        client = ShopifyClient(g.shop, g.access_token)
        orders = [format_order(o) for o in client.get_pending_orders()]
        return jsonify({'success': True, 'shop': g.shop, 'count': len(orders), 'orders': orders})
    except Exception as e:
        details = getattr(e, 'details', str(e))
        logger.error("Error fetching orders for %s: %s", g.shop, details)
        return error_response('Error fetching orders', details=details)


@app.route('/api/orders/update-tracking', methods=['POST'])
@require_extension_key
def update_tracking():
    data = request.get_json(silent=True) or {}
    order_id = data.get('order_id')
    tracking_number = data.get('tracking_number')
    tracking_company = data.get('tracking_company') or DEFAULT_TRACKING_COMPANY

    if not order_id or not tracking_number:
        return error_response('order_id and tracking_number are required', 400)

    try:
        client = ShopifyClient(g.shop, g.access_token)
        fulfillment = client.create_fulfillment(order_id, tracking_number, tracking_company)
        logger.info("Tracking %s added to order %s of %s", tracking_number, order_id, g.shop)
        return jsonify({'success': True, 'message': 'Tracking updated', 'fulfillment': fulfillment})
    except Exception as e:
        details = getattr(e, 'details', str(e))
        logger.error("Error updating tracking for %s: %s", g.shop, details)
        return error_response('Error updating tracking', details=details)

# --- WEBHOOKS ---

@app.route('/api/webhooks/app/uninstalled', methods=['POST'])
def webhook_app_uninstalled():
    if not webhook_is_authentic():
        return "HMAC validation failed", 403

    shop_domain = request.headers.get('X-Shopify-Shop-Domain')
    if not shop_domain:
        shop_domain = (webhook_payload() or {}).get('myshopify_domain')

    try:
        deactivate_shop(shop_domain)
    except SQLAlchemyError:
        logger.exception("Error uninstalling %s", shop_domain)
        db.session.rollback()
        return error_response('Error uninstalling shop')
    logger.info("App uninstalled from %s", shop_domain)
    return "OK", 200


@app.route('/api/webhooks', methods=['POST'])
def webhook_catch_all():
    if not webhook_is_authentic():
        return "Unauthorized", 401
    logger.info("HMAC verification passed on /api/webhooks")
    return "OK", 200

# --- GDPR (Mandatory) ---

@app.route('/api/webhooks/customers/data_request', methods=['POST'])
def gdpr_data_request():
    if not webhook_is_authentic():
        return "Unauthorized", 401
    # Export not implemented, acknowledged only (see DESIGN.md)
    logger.info("Customer data request received: %s", request.get_data(as_text=True))
    return "OK", 200


@app.route('/api/webhooks/customers/redact', methods=['POST'])
def gdpr_customer_redact():
    if not webhook_is_authentic():
        return "Unauthorized", 401
    payload = webhook_payload()
    if payload is None:
        return "Invalid JSON payload", 400

    shop_domain = payload.get('shop_domain')
    logger.info("Customer redact received: %s", payload)
    if shop_domain:
        try:
            delete_shop_data(shop_domain)
        except SQLAlchemyError:
            logger.exception("Error deleting data for %s", shop_domain)
            return error_response('Error deleting shop data')
    return "OK", 200


@app.route('/api/webhooks/shop/redact', methods=['POST'])
def gdpr_shop_redact():
    if not webhook_is_authentic():
        return "Unauthorized", 401
    # TODO: erase the shop's rows once product signs off on hard deletion here
    logger.info("Shop redact received: %s", request.get_data(as_text=True))
    return "OK", 200

# --- HEALTH / ADMIN PAGE ---

@app.route('/api/health')
def health():
    try:
        stores = get_active_shops_count()
    except SQLAlchemyError:
        logger.exception("Error counting active shops")
        db.session.rollback()
        stores = 0
    return jsonify({
        'success': True,
        'message': 'API running',
        'stores': stores,
        'timestamp': datetime.utcnow().isoformat() + 'Z',
    })


@app.route('/')
def index():
    return render_template('app.html', api_key=app.config['SHOPIFY_API_KEY'])

# --- START ---

def main():
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    with app.app_context():
        if not init_database():
            logger.error("Could not connect to the database")
            sys.exit(1)
        active_shops = get_active_shops_count()

    start_state_sweeper(state_store)

    logger.info("=" * 60)
    logger.info("Server started")
    logger.info("Port: %s", PORT)
    logger.info("URL: %s", APP_URL)
    logger.info("API Key: %s", SHOPIFY_API_KEY)
    logger.info("Active shops: %s", active_shops)
    logger.info("=" * 60)

    app.run(host='0.0.0.0', port=PORT)


if __name__ == '__main__':
    main()
