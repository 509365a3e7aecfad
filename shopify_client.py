import logging

import requests

logger = logging.getLogger(__name__)

API_VERSION = '2024-01'
PENDING_ORDERS_LIMIT = 50
DEFAULT_TRACKING_COMPANY = 'Correos de Costa Rica'

LOCATION_ATTRIBUTES = [
    'province_id', 'province_name',
    'county_id', 'county_name',
    'district_id', 'district_name',
]


class ShopifyAPIError(Exception):
    """A failed call to the Shopify Admin API.

    ``status_code`` is None when the request never got a response.
    ``details`` holds the upstream body (or the transport error message).
    """

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details if details is not None else message


class ShopifyClient:
    def __init__(self, shop_domain, access_token=None):
        self.shop_domain = shop_domain
        self.admin_url = f"https://{shop_domain}/admin"
        self.base_url = f"{self.admin_url}/api/{API_VERSION}"
        self.headers = {"Content-Type": "application/json"}
        if access_token:
            self.headers["X-Shopify-Access-Token"] = access_token

    def _request(self, method, url, **kwargs):
        try:
            response = requests.request(method, url, headers=self.headers, **kwargs)
        except requests.RequestException as e:
            raise ShopifyAPIError(f"{method} {url} failed: {e}", details=str(e)) from e

        if not response.ok:
            try:
                details = response.json()
            except ValueError:
                details = response.text
            raise ShopifyAPIError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                details=details,
            )
        return response.json()

    def request_access_token(self, api_key, secret, code):
        """Exchanges an OAuth authorization code for a permanent access token."""
        data = self._request('POST', f"{self.admin_url}/oauth/access_token", json={
            'client_id': api_key,
            'client_secret': secret,
            'code': code,
        })
        return data['access_token'], data.get('scope')

    def get_pending_orders(self, limit=PENDING_ORDERS_LIMIT):
        """Paid orders that are still waiting to be fulfilled."""
        data = self._request('GET', f"{self.base_url}/orders.json", params={
            'status': 'any',
            'financial_status': 'paid',
            'fulfillment_status': 'unfulfilled',
            'limit': limit,
        })
        return data.get('orders', [])

    def create_fulfillment(self, order_id, tracking_number, tracking_company=DEFAULT_TRACKING_COMPANY):
        """Fulfills an order with tracking info and notifies the customer."""
        payload = {
            "fulfillment": {
                "location_id": None,
                "tracking_number": tracking_number,
                "tracking_company": tracking_company,
                "notify_customer": True,
            }
        }
        data = self._request('POST', f"{self.base_url}/orders/{order_id}/fulfillments.json", json=payload)
        return data.get('fulfillment')

    def create_webhook(self, topic, address):
        payload = {"webhook": {"topic": topic, "address": address, "format": "json"}}
        data = self._request('POST', f"{self.base_url}/webhooks.json", json=payload)
        return data.get('webhook')


# --- ORDER FORMATTING ---

def get_note_attribute(note_attributes, key):
    for attr in note_attributes or []:
        if attr.get('name') == key:
            return attr.get('value')
    return None


def format_customer(customer):
    if not customer:
        return None
    return {
        'name': f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}",
        'email': customer.get('email') or '',
        'phone': customer.get('phone') or '',
    }


def format_order(order):
    """Flattens a REST order into what the extension needs to build a shipment."""
    note_attributes = order.get('note_attributes') or []
    data = {
        'id': order.get('id'),
        'order_number': order.get('order_number'),
        'name': order.get('name'),
        'created_at': order.get('created_at'),
        'total_price': order.get('total_price'),
        'currency': order.get('currency'),
        'note': order.get('note'),
        'note_attributes': note_attributes,
        'customer': format_customer(order.get('customer')),
        'shipping_address': order.get('shipping_address'),
        'line_items': [
            {'title': item.get('title'), 'quantity': item.get('quantity'), 'price': item.get('price')}
            for item in order.get('line_items') or []
        ],
    }
    for key in LOCATION_ATTRIBUTES:
        data[key] = get_note_attribute(note_attributes, key)
    return data
