"""
Admin session tokens
Stateless HMAC-signed tokens carried in the admin_session cookie
"""

import hmac
import hashlib
import secrets

COOKIE_NAME = 'admin_session'
NONCE_BYTES = 24


def _sign(value, secret):
    return hmac.new(secret.encode('utf-8'), value.encode('utf-8'), hashlib.sha256).hexdigest()


def get_cookie_name():
    return COOKIE_NAME


def create_token(secret):
    """Create a new session token: <random nonce>.<hmac-sha256 of the nonce>"""
    nonce = secrets.token_hex(NONCE_BYTES)
    return f"{nonce}.{_sign(nonce, secret)}"


def verify_token(token, secret):
    """
    Check a session token against the server secret.
    Fails closed: anything missing, malformed or not matching returns False.
    """
    if not token or not secret or not isinstance(token, str):
        return False

    parts = token.split('.')
    if len(parts) != 2:
        return False

    nonce, signature = parts
    if not nonce or not signature:
        return False

    expected = _sign(nonce, secret)
    try:
        return hmac.compare_digest(signature.encode('utf-8'), expected.encode('utf-8'))
    except (TypeError, UnicodeError):
        return False


def is_authorized(cookies, secret):
    """Read the session cookie out of a cookie mapping and verify it"""
    if not cookies:
        return False
    return verify_token(cookies.get(COOKIE_NAME), secret)
