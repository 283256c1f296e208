"""
Request normalization and validation
Pure helpers applied to client input before anything is forwarded
"""

import re
from collections import namedtuple
from datetime import datetime, timezone

# ============================================================================
# CONSTANTS
# ============================================================================

BOOKING_TYPES = ('ASPORTO', 'CONSEGNA', 'TAVOLO', 'RITIRO')
BOOKING_STATUSES = ('NUOVA', 'CONFERMATA', 'CONSEGNATA', 'ANNULLATA')
DEFAULT_STATUS = 'NUOVA'

BOX_SIZES = (50, 100, 200)
MAX_BOXES = 99

TRUE_WORDS = ('true', 'yes', 'y', 'on')
FALSE_WORDS = ('false', 'no', 'n', 'off')

# Keys accepted for the bookings_open flag, in lookup order
BOOL_KEYS = ('value', 'open', 'bookings_open', 'bookingsOpen')

ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
IT_DATE_RE = re.compile(r'^(\d{2})/(\d{2})/(\d{4})$')
TIME_RE = re.compile(r'^\d{2}:\d{2}$')
DOT_TIME_RE = re.compile(r'^(\d{1,2})\.(\d{2})$')
HOUR_RE = re.compile(r'^(\d{1,2})$')

BoolResult = namedtuple('BoolResult', ['ok', 'value', 'error'])


# ============================================================================
# SCALAR HELPERS
# ============================================================================

def clean(value):
    """None-safe str + strip"""
    if value is None:
        return ''
    return str(value).strip()


def to_int(value, default=0):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_date(value):
    """YYYY-MM-DD stays, DD/MM/YYYY becomes YYYY-MM-DD, anything else passes through"""
    s = clean(value)
    if ISO_DATE_RE.match(s):
        return s

    m = IT_DATE_RE.match(s)
    if m:
        return f"{m.group(3)}-{m.group(2)}-{m.group(1)}"

    return s


def normalize_time(value):
    """HH:MM stays, H.MM / HH.MM and bare H / HH are rewritten, anything else passes through"""
    s = clean(value)
    if TIME_RE.match(s):
        return s

    m = DOT_TIME_RE.match(s)
    if m:
        return f"{m.group(1).zfill(2)}:{m.group(2)}"

    m = HOUR_RE.match(s)
    if m:
        return f"{m.group(1).zfill(2)}:00"

    return s


def is_valid_date(value):
    return bool(ISO_DATE_RE.match(value or ''))


def is_valid_time(value):
    return bool(TIME_RE.match(value or ''))


# ============================================================================
# BOOLEANS
# ============================================================================

def parse_bool_loose(body):
    """
    Read the bookings_open flag out of a request body.

    Looks for value / open / bookings_open / bookingsOpen (first present wins).
    Returns BoolResult(ok=False, ...) when none of the keys is present, so an
    absent flag is never confused with a falsy one.
    """
    if not isinstance(body, dict):
        body = {}

    raw = None
    found = False
    for key in BOOL_KEYS:
        if key in body and body[key] is not None:
            raw = body[key]
            found = True
            break

    if not found:
        return BoolResult(False, None, "Manca 'value' (o 'open' / 'bookings_open') nel body.")

    if isinstance(raw, bool):
        return BoolResult(True, raw, None)
    if raw == 1 or raw == '1':
        return BoolResult(True, True, None)
    if raw == 0 or raw == '0':
        return BoolResult(True, False, None)

    s = str(raw).strip().lower()
    if s in TRUE_WORDS:
        return BoolResult(True, True, None)
    if s in FALSE_WORDS:
        return BoolResult(True, False, None)

    # Last resort: plain truthiness
    return BoolResult(True, bool(raw), None)


def to_bool(value):
    """Permissive coercion for values coming back from the backend"""
    if isinstance(value, bool):
        return value
    return clean(value).lower() in ('true', '1', 'yes', 'y', 'on')


def normalize_bookings_open(payload):
    """
    Extract bookings_open from whatever shape the backend returned.
    Returns True/False, or None when no usable value is present.
    """
    if not isinstance(payload, dict):
        return None

    for key in ('bookings_open', 'bookingsOpen'):
        if payload.get(key) is not None:
            return to_bool(payload[key])

    settings = payload.get('settings')
    if isinstance(settings, dict):
        for key in ('bookings_open', 'bookingsOpen'):
            if settings.get(key) is not None:
                return to_bool(settings[key])

    if payload.get('value') is not None:
        return to_bool(payload['value'])

    return None


# ============================================================================
# BOOKINGS
# ============================================================================

def box_quantities(body):
    """Box counts clamped to 0..99, keyed by size"""
    quantities = {}
    for size in BOX_SIZES:
        n = to_int(body.get(f'scatola{size}'), 0)
        quantities[size] = max(0, min(MAX_BOXES, n))
    return quantities


def box_summary(quantities):
    total = sum(size * n for size, n in quantities.items())
    parts = [f"{size}:{quantities[size]}" for size in BOX_SIZES]
    return ' | '.join(parts + [f"TOT:{total}"])


def validate_booking(body, shop_name='Arrosticini Abruzzesi', now=None):
    """
    Validate a public booking submission and build the payload for the backend.

    Returns (payload, None) when valid, (None, message) otherwise.
    """
    if not isinstance(body, dict):
        return None, 'Richiesta non valida.'

    # Anti-spam: the hidden field must stay empty
    if clean(body.get('honeypot')):
        return None, 'Richiesta non valida.'

    nome = clean(body.get('nome'))
    telefono = clean(body.get('telefono'))
    tipo = clean(body.get('tipo') or body.get('ritiroConsegna')).upper()
    data = normalize_date(body.get('data'))
    ora = normalize_time(body.get('ora'))

    quantities = box_quantities(body)
    totale = sum(size * n for size, n in quantities.items())
    ordine = clean(body.get('ordine'))
    if not ordine and totale > 0:
        ordine = box_summary(quantities)

    if not nome or not telefono or not tipo or not data or not ora or not ordine:
        return None, 'Campi obbligatori mancanti (nome, telefono, tipo, data, ora, ordine/prenotazione).'

    if tipo not in BOOKING_TYPES:
        return None, 'Tipo non valido.'
    if not is_valid_date(data):
        return None, 'Formato data non valido (YYYY-MM-DD o DD/MM/YYYY).'
    if not is_valid_time(ora):
        return None, 'Formato ora non valido (HH:mm).'

    indirizzo = clean(body.get('indirizzo'))
    persone = clean(body.get('persone'))

    if tipo == 'CONSEGNA' and not indirizzo:
        return None, "Per la consegna serve l'indirizzo."
    if tipo == 'TAVOLO' and not persone:
        return None, 'Per il tavolo serve il numero persone.'

    now = now or datetime.now(timezone.utc)
    payload = {
        'ts': now.isoformat().replace('+00:00', 'Z'),
        'negozio': clean(body.get('negozio')) or shop_name,
        'nome': nome,
        'telefono': telefono,
        'tipo': tipo,
        'data': data,
        'ora': ora,
        'ordine': ordine,
        'scatola50': quantities[50],
        'scatola100': quantities[100],
        'scatola200': quantities[200],
        'totaleArrosticini': totale,
        'indirizzo': indirizzo if tipo == 'CONSEGNA' else '',
        'persone': persone if tipo == 'TAVOLO' else '',
        'pagamento': clean(body.get('pagamento')),
        'allergeni': clean(body.get('allergeni')),
        'note': clean(body.get('note')),
        'stato': DEFAULT_STATUS,
        'canale': (clean(body.get('canale')) or 'APP').upper(),
    }
    return payload, None


def status_identifiers(body):
    """
    Pick the fields the backend uses to find a booking row.
    Either a timestamp, or telefono + dataISO + ora. Returns None if neither is complete.
    """
    if not isinstance(body, dict):
        return None

    ids = {}
    timestamp = clean(body.get('timestampISO') or body.get('timestamp'))
    telefono = clean(body.get('telefono'))
    data_iso = normalize_date(body.get('dataISO') or body.get('data'))
    ora = normalize_time(body.get('ora'))

    if timestamp:
        ids['timestampISO'] = timestamp
    if telefono:
        ids['telefono'] = telefono
    if data_iso:
        ids['dataISO'] = data_iso
    if ora:
        ids['ora'] = ora

    has_composite = bool(telefono and data_iso and ora)
    if not timestamp and not has_composite:
        return None

    for key in ('tipo', 'tot'):
        value = clean(body.get(key))
        if value:
            ids[key] = value

    return ids
