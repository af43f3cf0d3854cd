"""Async PayPal Orders v2 client using the client-credentials flow."""

import logging
import time

import httpx

from therapy_backend.core import config

logger = logging.getLogger(__name__)

PAYPAL_BASE_URLS = {
    'sandbox': 'https://api-m.sandbox.paypal.com',
    'production': 'https://api-m.paypal.com',
}

_TOKEN_CACHE: dict[str, float | str | None] = {'token': None, 'exp': 0.0}


class PaymentError(Exception):
    def __init__(self, details: str, status_code: int | None = None):
        super().__init__(details)
        self.details = details
        self.status_code = status_code


def reset_token_cache() -> None:
    _TOKEN_CACHE.update(token=None, exp=0.0)


def base_url() -> str:
    return PAYPAL_BASE_URLS.get(config.PAYPAL_ENVIRONMENT.lower(), PAYPAL_BASE_URLS['sandbox'])


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f'HTTP {response.status_code}'
    return payload.get('message') or payload.get('error_description') or response.text


async def _get_token() -> str:
    now = time.time()
    if _TOKEN_CACHE['token'] and now < _TOKEN_CACHE['exp']:
        return _TOKEN_CACHE['token']  # type: ignore[return-value]

    if not (config.PAYPAL_CLIENT_ID and config.PAYPAL_CLIENT_SECRET):
        raise PaymentError('PayPal credentials are not configured.')

    try:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f'{base_url()}/v1/oauth2/token',
                data={'grant_type': 'client_credentials'},
                auth=(config.PAYPAL_CLIENT_ID, config.PAYPAL_CLIENT_SECRET),
            )
    except httpx.HTTPError as exc:
        raise PaymentError(f'PayPal token request failed: {exc}') from exc

    if response.status_code != 200:
        raise PaymentError(_error_message(response), response.status_code)

    data = response.json()
    _TOKEN_CACHE.update(token=data['access_token'], exp=now + data.get('expires_in', 3600) - 300)
    return data['access_token']


async def _post(path: str, body: dict | None = None) -> dict:
    headers = {
        'Authorization': f'Bearer {await _get_token()}',
        'Content-Type': 'application/json',
        'Prefer': 'return=representation',
    }
    try:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(f'{base_url()}{path}', headers=headers, json=body or {})
    except httpx.HTTPError as exc:
        raise PaymentError(f'PayPal request failed: {exc}') from exc

    if response.status_code >= 400:
        raise PaymentError(_error_message(response), response.status_code)
    return response.json()


def _format_amount(price: float) -> str:
    return f'{price:.2f}'


async def create_order(package_id: str | None, package_name: str, price: float, description: str = '') -> dict:
    """Create a capture-intent order with the package as its single item."""
    amount = _format_amount(price)
    currency = config.PAYPAL_CURRENCY
    item = {
        'name': package_name,
        'unit_amount': {'currency_code': currency, 'value': amount},
        'quantity': '1',
        'description': description or package_name,
    }
    if package_id:
        item['sku'] = package_id

    order = await _post(
        '/v2/checkout/orders',
        {
            'intent': 'CAPTURE',
            'purchase_units': [
                {
                    'amount': {
                        'currency_code': currency,
                        'value': amount,
                        'breakdown': {'item_total': {'currency_code': currency, 'value': amount}},
                    },
                    'items': [item],
                    'description': package_name,
                },
            ],
            'application_context': {'shipping_preference': 'NO_SHIPPING'},
        },
    )
    logger.info('Created PayPal order %s for %s', order.get('id'), package_name)
    return order


async def capture_order(order_id: str) -> dict:
    order = await _post(f'/v2/checkout/orders/{order_id}/capture')
    logger.info('Captured PayPal order %s with status %s', order_id, order.get('status'))
    return order


def package_from_order(order: dict) -> dict:
    """Read the purchased package back out of a captured order."""
    unit = (order.get('purchase_units') or [{}])[0]
    item = (unit.get('items') or [{}])[0]
    amount = unit.get('amount', {}).get('value')
    if amount is None:
        captures = unit.get('payments', {}).get('captures') or [{}]
        amount = captures[0].get('amount', {}).get('value', '0')
    return {
        'id': item.get('sku') or 'unknown',
        'name': item.get('name') or 'Therapy Session',
        'price': float(amount or 0),
    }
