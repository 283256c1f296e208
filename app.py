#!/usr/bin/env python3
"""
Arrosticini Booking Gateway - Backend API
Public booking form, assistant chat and admin panel in front of the
Google Apps Script spreadsheet that stores bookings and settings
"""

# Standard library
import os
import hmac
import logging
from functools import wraps

# Third-party
from flask import Flask, request, jsonify
from flask_cors import CORS
from dotenv import load_dotenv

# Local
import chat
import gateway
from admin_auth import COOKIE_NAME, create_token, is_authorized
from gateway import ConfigError, GatewayError, GatewayTimeout, GatewayUnreachable, env
from normalizers import (
    BOOKING_STATUSES, clean, parse_bool_loose, status_identifiers, validate_booking,
)

# Load environment variables
load_dotenv()

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# METRICS LOGGING HELPERS
# ============================================================================
def log_metric(event_type, **kwargs):
    """Log structured metrics for easy parsing and analysis"""
    parts = [f"{k}={v}" for k, v in kwargs.items()]
    logger.info(f"METRIC|{event_type}|{'|'.join(parts)}")

# ============================================================================
# FLASK APP INITIALIZATION
# ============================================================================

app = Flask(__name__)
CORS(app)

# ============================================================================
# CONFIGURATION - Secrets are read per request (see gateway.env)
# ============================================================================

APP_ENV = os.getenv('APP_ENV', 'development')
SECURE_COOKIES = APP_ENV == 'production'
ADMIN_SESSION_MAX_AGE = int(os.getenv('ADMIN_SESSION_MAX_AGE', str(60 * 60 * 24 * 7)))
SHOP_NAME = os.getenv('SHOP_NAME', 'Arrosticini Abruzzesi')

REQUIRED_ENV = [
    'GOOGLE_SCRIPT_URL',
    'GOOGLE_SCRIPT_SECRET',
    'ADMIN_SESSION_SECRET',
    'ADMIN_PASSWORD',
]
OPTIONAL_ENV = ['BOOKING_WEBAPP_URL', 'OPENAI_API_KEY']

# ============================================================================
# RESPONSE HELPERS
# ============================================================================

def ok(status=200, **payload):
    return jsonify({'ok': True, **payload}), status


def fail(error, status, **extra):
    return jsonify({'ok': False, 'error': error, **extra}), status


def gateway_failure(e):
    """Turn a gateway exception into the JSON error envelope"""
    if isinstance(e, ConfigError):
        return fail(str(e), 500)
    if isinstance(e, (GatewayTimeout, GatewayUnreachable)):
        return fail(str(e), e.status)
    return fail(str(e), e.status, detail=e.details)


def read_json():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.after_request
def add_no_cache_headers(response):
    """Every API answer must reflect the latest backend state"""
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'
    return response

# ============================================================================
# ADMIN AUTH
# ============================================================================

def admin_required(view):
    """Reject the request with 401 unless it carries a valid session cookie"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        secret = env('ADMIN_SESSION_SECRET')
        if not secret:
            logger.error("ADMIN_SESSION_SECRET not configured!")
            return fail('ADMIN_SESSION_SECRET mancante', 500)

        if not is_authorized(request.cookies, secret):
            return fail('Non autorizzato', 401)

        return view(*args, **kwargs)
    return wrapper


def set_session_cookie(response, value, max_age):
    response.set_cookie(
        COOKIE_NAME,
        value,
        max_age=max_age,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite='Lax',
        path='/',
    )
    return response


@app.route('/api/admin/login', methods=['POST'])
def admin_login():
    """Check the panel password and hand out a session cookie"""
    try:
        password_expected = env('ADMIN_PASSWORD')
        session_secret = env('ADMIN_SESSION_SECRET')
        if not password_expected:
            return fail('ADMIN_PASSWORD mancante', 500)
        if not session_secret:
            return fail('ADMIN_SESSION_SECRET mancante', 500)

        password = clean(read_json().get('password'))
        if not password:
            return fail('Inserisci la password.', 400)

        if not hmac.compare_digest(password.encode('utf-8'), password_expected.encode('utf-8')):
            logger.warning(f"Failed admin login from {request.headers.get('X-Forwarded-For', request.remote_addr)}")
            log_metric('admin_login', success=False)
            return fail('Password errata.', 401)

        response, _ = ok()
        set_session_cookie(response, create_token(session_secret), ADMIN_SESSION_MAX_AGE)
        log_metric('admin_login', success=True)
        return response

    except Exception as e:
        logger.error(f"Error during admin login: {str(e)}")
        return fail('Errore server.', 500)


@app.route('/api/admin/logout', methods=['POST'])
def admin_logout():
    """Clear the session cookie (the only way to end a session)"""
    response, _ = ok()
    return set_session_cookie(response, '', 0)

# ============================================================================
# PUBLIC API ENDPOINTS
# ============================================================================

@app.route('/')
def index():
    return jsonify({'ok': True, 'service': f"{SHOP_NAME} - prenotazioni"})


@app.route('/api/bookings', methods=['POST'])
def create_booking():
    """Handle booking form submission"""
    try:
        payload, error = validate_booking(read_json(), shop_name=SHOP_NAME)
        if error:
            return fail(error, 400)

        logger.info(f"Received booking: {payload['tipo']} {payload['data']} {payload['ora']} ({payload['ordine']})")

        if bookings_closed():
            return fail('Prenotazioni momentaneamente chiuse. Riprova più tardi.', 403)

        result = gateway.submit_booking(payload)

        log_metric('booking_forwarded',
                   tipo=payload['tipo'],
                   data=payload['data'],
                   ora=payload['ora'],
                   totale=payload['totaleArrosticini'],
                   canale=payload['canale'])
        return ok(message='Ricevuto ✅ Il locale confermerà appena possibile.', response=result)

    except (ConfigError, GatewayError) as e:
        logger.error(f"Error forwarding booking: {str(e)}")
        return gateway_failure(e)
    except Exception as e:
        logger.error(f"Error creating booking: {str(e)}")
        return fail('Errore server /api/bookings', 500)


def bookings_closed():
    """
    True only when the backend explicitly reports bookings as closed.
    Unknown, unconfigured or unreachable settings never block a booking.
    """
    if not env('GOOGLE_SCRIPT_URL') or not env('GOOGLE_SCRIPT_SECRET'):
        return False
    try:
        bookings_open, _ = gateway.get_settings()
    except GatewayError as e:
        logger.warning(f"Could not read settings before booking, assuming open: {e}")
        return False
    return bookings_open is False


@app.route('/api/bookings', methods=['GET'])
def bookings_health():
    return ok()


@app.route('/api/settings', methods=['GET', 'POST'])
def public_settings():
    """Read bookings_open (POST is accepted as an alias of GET)"""
    return read_settings()


def read_settings():
    try:
        bookings_open, _ = gateway.get_settings()
        return ok(bookings_open=bookings_open, settings={'bookings_open': bookings_open})
    except (ConfigError, GatewayError) as e:
        logger.error(f"Error reading settings: {str(e)}")
        return gateway_failure(e)
    except Exception as e:
        logger.error(f"Error reading settings: {str(e)}")
        return fail('Errore server.', 500)


@app.route('/api/chat', methods=['POST'])
def assistant_chat():
    """Assistant widget: one user message plus recent history in, one reply out"""
    try:
        data = read_json()
        message = clean(data.get('message'))[:chat.MAX_MESSAGE_CHARS]
        if not message:
            return fail('Messaggio vuoto.', 400)

        client = chat.get_client()
        if client is None:
            return fail('OPENAI_API_KEY mancante', 500)

        reply = chat.ask_assistant(client, message, data.get('history'))
        return ok(reply=reply)

    except chat.ChatUnavailable:
        return fail('Assistente non disponibile. Riprova tra poco.', 502)
    except Exception as e:
        logger.error(f"Error in chat: {str(e)}")
        return fail('Errore server.', 500)

# ============================================================================
# ADMIN API ENDPOINTS
# ============================================================================

@app.route('/api/admin/bookings', methods=['GET'])
@admin_required
def admin_bookings():
    """List bookings from the spreadsheet"""
    try:
        rows, count = gateway.list_bookings()
        return ok(rows=rows, count=count)
    except (ConfigError, GatewayError) as e:
        logger.error(f"Error fetching bookings: {str(e)}")
        return gateway_failure(e)
    except Exception as e:
        logger.error(f"Error fetching bookings: {str(e)}")
        return fail('Errore lista prenotazioni', 500)


@app.route('/api/admin/bookings', methods=['POST'])
@admin_required
def admin_update_status():
    """Change the status of one booking"""
    try:
        data = read_json()
        action = clean(data.get('action')) or 'updateStatus'
        if action != 'updateStatus':
            return fail(f"Azione non supportata: {action}", 400)

        stato = clean(data.get('stato'))
        if stato not in BOOKING_STATUSES:
            return fail(f"Stato non valido. Valori ammessi: {', '.join(BOOKING_STATUSES)}.", 400)

        identifiers = status_identifiers(data)
        if not identifiers:
            return fail('Serve timestampISO oppure telefono + dataISO + ora.', 400)

        result, transport = gateway.update_status(stato, identifiers)

        log_metric('status_updated', stato=stato, transport=transport,
                   key='timestamp' if 'timestampISO' in identifiers else 'composite')
        return ok(transport=transport, result=result)

    except (ConfigError, GatewayError) as e:
        logger.error(f"Error updating status: {str(e)}")
        return gateway_failure(e)
    except Exception as e:
        logger.error(f"Error updating status: {str(e)}")
        return fail('Errore aggiornando lo stato.', 500)


@app.route('/api/admin/settings', methods=['GET'])
@admin_required
def admin_get_settings():
    return read_settings()


@app.route('/api/admin/settings', methods=['POST'])
@admin_required
def admin_set_settings():
    """Open or close public bookings"""
    try:
        parsed = parse_bool_loose(read_json())
        if not parsed.ok:
            return fail(parsed.error, 400)

        bookings_open, _ = gateway.set_bookings_open(parsed.value)

        log_metric('settings_written', bookings_open=bookings_open)
        return ok(bookings_open=bookings_open, settings={'bookings_open': bookings_open})

    except (ConfigError, GatewayError) as e:
        logger.error(f"Error writing settings: {str(e)}")
        return gateway_failure(e)
    except Exception as e:
        logger.error(f"Error writing settings: {str(e)}")
        return fail('Errore server.', 500)


# ============================================================================
# INITIALIZATION - Runs on import (works with gunicorn)
# ============================================================================

logger.info("=" * 70)
logger.info(f"🔥 {SHOP_NAME} Booking Gateway Starting")
logger.info("=" * 70)
logger.info(f"🌍 Environment: {APP_ENV} (secure cookies: {SECURE_COOKIES})")
for name in REQUIRED_ENV:
    if env(name):
        logger.info(f"   {name}: set")
    else:
        logger.warning(f"   {name}: NOT SET - requests that need it will fail with 500")
for name in OPTIONAL_ENV:
    logger.info(f"   {name}: {'set' if env(name) else 'not set'}")
logger.info(f"⏱️  Script timeout: {gateway.SCRIPT_TIMEOUT_SECONDS:g}s")
logger.info(f"🍪 Session max age: {ADMIN_SESSION_MAX_AGE}s")
logger.info("=" * 70)

# ============================================================================
# MAIN - Only for direct execution (flask run or python app.py)
# ============================================================================

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', '5000')),
        debug=False
    )
