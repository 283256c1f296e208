"""
Gateway to the spreadsheet web app
Every read and write of bookings and settings goes through here
"""

import os
import re
import logging

import requests

from normalizers import BOOKING_STATUSES, normalize_bookings_open

logger = logging.getLogger(__name__)

SCRIPT_TIMEOUT_SECONDS = float(os.getenv('SCRIPT_TIMEOUT_SECONDS', '12'))
LIST_LIMIT = int(os.getenv('LIST_LIMIT', '300'))

AUTH_ERROR_RE = re.compile(r'unauthori[sz]ed|non autorizzato|secret', re.IGNORECASE)


# ============================================================================
# ERRORS
# ============================================================================

class ConfigError(Exception):
    """A required environment variable is missing"""

    def __init__(self, name):
        super().__init__(f"{name} mancante")
        self.name = name


class GatewayError(Exception):
    """The backend failed or rejected the request"""

    status = 500

    def __init__(self, message, status=None, details=None):
        super().__init__(message)
        if status is not None:
            self.status = status
        self.details = details


class GatewayTimeout(GatewayError):
    status = 504


class GatewayUnreachable(GatewayError):
    status = 502


# ============================================================================
# CONFIGURATION
# ============================================================================

def env(name):
    return (os.getenv(name) or '').strip()


def script_config():
    """URL and shared secret of the script, both required"""
    url = env('GOOGLE_SCRIPT_URL')
    secret = env('GOOGLE_SCRIPT_SECRET')
    if not url:
        raise ConfigError('GOOGLE_SCRIPT_URL')
    if not secret:
        raise ConfigError('GOOGLE_SCRIPT_SECRET')
    return url, secret


def booking_url():
    url = env('BOOKING_WEBAPP_URL') or env('GOOGLE_SCRIPT_URL')
    if not url:
        raise ConfigError('BOOKING_WEBAPP_URL')
    return url


# ============================================================================
# TRANSPORT
# ============================================================================

def parse_body(response):
    """Decode a JSON body; non-JSON bodies are wrapped in an error envelope"""
    try:
        data = response.json()
    except ValueError:
        return {'ok': False, 'error': 'Risposta non JSON', 'raw': response.text}

    if isinstance(data, dict):
        return data
    return {'ok': True, 'data': data}


def is_auth_failure(response, data):
    if response.status_code in (401, 403):
        return True
    error = data.get('error') if isinstance(data, dict) else None
    return bool(error and AUTH_ERROR_RE.search(str(error)))


def check_upstream(response, data, fallback_error):
    """Raise GatewayError when the backend answered with a failure"""
    if response.ok and data.get('ok') is not False:
        return data

    message = data.get('error') or f"{fallback_error} ({response.status_code})"
    status = 401 if is_auth_failure(response, data) else 500
    raise GatewayError(str(message), status=status, details=data)


def _send(method, url, **kwargs):
    try:
        return requests.request(method, url, timeout=SCRIPT_TIMEOUT_SECONDS, **kwargs)
    except requests.Timeout:
        logger.error(f"Script {method} timed out after {SCRIPT_TIMEOUT_SECONDS}s")
        raise GatewayTimeout(f"Timeout: il pannello non ha risposto entro {SCRIPT_TIMEOUT_SECONDS:g} secondi.")
    except requests.RequestException as e:
        logger.error(f"Script {method} failed: {e}")
        raise GatewayUnreachable(f"Pannello non raggiungibile: {e}")


def post_script(url, payload, fallback_error='Errore pannello'):
    response = _send('POST', url, json=payload, headers={'Cache-Control': 'no-store'})
    return check_upstream(response, parse_body(response), fallback_error)


def get_script(url, params, fallback_error='Errore pannello'):
    response = _send('GET', url, params=params, headers={'Cache-Control': 'no-store'})
    return check_upstream(response, parse_body(response), fallback_error)


# ============================================================================
# OPERATIONS
# ============================================================================

def submit_booking(payload):
    """Forward a validated booking. A plain-text 2xx answer counts as success."""
    url = booking_url()
    secret = env('GOOGLE_SCRIPT_SECRET')
    body = dict(payload)
    if secret:
        body['secret'] = secret

    response = _send('POST', url, json=body)
    try:
        data = response.json()
    except ValueError:
        if response.ok:
            return response.text
        data = {'ok': False, 'error': f"Errore pannello: {response.status_code} {response.reason}",
                'raw': response.text}

    if not isinstance(data, dict):
        data = {'ok': True, 'data': data}
    return check_upstream(response, data, 'Errore pannello')


def list_bookings(limit=None):
    url, secret = script_config()
    data = get_script(url, {'action': 'list', 'limit': limit or LIST_LIMIT, 'secret': secret},
                      'Errore lista prenotazioni')
    rows = data.get('rows') or []
    return rows, data.get('count') or len(rows)


def update_status(stato, identifiers):
    """
    Ask the backend to move a booking to a new status.

    Tries a JSON POST first; if that raises, times out or reports a failure,
    the same fields are sent once more as a query-string GET.
    Returns (data, transport) where transport is 'POST' or 'GET'.
    """
    if stato not in BOOKING_STATUSES:
        raise ValueError(f"Stato non valido: {stato}")
    if not identifiers:
        raise ValueError('Serve timestampISO oppure telefono + dataISO + ora.')

    url, secret = script_config()
    fields = {'action': 'updateStatus', 'stato': stato}
    fields.update(identifiers)

    try:
        data = post_script(url, dict(fields, secret=secret), 'Errore aggiornando lo stato')
        return data, 'POST'
    except GatewayError as e:
        logger.warning(f"updateStatus POST failed ({e}), falling back to GET")

    data = get_script(url, dict(fields, secret=secret), 'Errore aggiornando lo stato')
    return data, 'GET'


def get_settings():
    """Returns (bookings_open or None, raw settings payload)"""
    url, secret = script_config()
    data = post_script(url, {'action': 'getSettings', 'secret': secret}, 'Errore settings.')
    return normalize_bookings_open(data), data


def set_bookings_open(value):
    url, secret = script_config()
    data = post_script(url, {'action': 'setBookingsOpen', 'value': bool(value), 'secret': secret},
                       'Errore setBookingsOpen.')
    current = normalize_bookings_open(data)
    return (bool(value) if current is None else current), data
