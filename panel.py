"""
Admin panel client
Polls the gateway for bookings and settings, flags new arrivals and drives
status changes with optimistic updates.

Status flow:
- NUOVA -> CONFERMATA -> CONSEGNATA
- any status except ANNULLATA -> ANNULLATA
"""

import os
import re
import logging
import threading
from datetime import datetime, timezone
from urllib.parse import quote
from zoneinfo import ZoneInfo

import requests

from normalizers import clean, is_valid_date, normalize_date, normalize_bookings_open, to_int

logger = logging.getLogger(__name__)

TIMEZONE = ZoneInfo(os.getenv('PANEL_TIMEZONE', 'Europe/Rome'))

BOOKINGS_REFRESH_SECONDS = 30
SETTINGS_REFRESH_SECONDS = 25

ALLOWED_TRANSITIONS = {
    'NUOVA': ('CONFERMATA', 'ANNULLATA'),
    'CONFERMATA': ('CONSEGNATA', 'ANNULLATA'),
    'CONSEGNATA': ('ANNULLATA',),
    'ANNULLATA': (),
}

# Sheet columns when rows come back as plain lists
COLUMNS = [
    ('nome', ('Nome', 'nome')),
    ('telefono', ('Telefono', 'telefono')),
    ('tipo', ('Ritiro/Consegna', 'tipo')),
    ('data', ('Data', 'data', 'date')),
    ('ora', ('Ora', 'ora')),
    ('s50', ('Scatola 50', 'scatola50')),
    ('s100', ('Scatola 100', 'scatola100')),
    ('s200', ('Scatola 200', 'scatola200')),
    ('tot', ('Totale Arrosticini', 'totaleArrosticini', 'tot')),
    ('indirizzo', ('Indirizzo', 'indirizzo')),
    ('stato', ('Stato', 'stato')),
    ('note', ('Note', 'note')),
    ('timestamp', ('Timestamp', 'timestamp')),
]


class PanelError(Exception):
    pass


class Unauthorized(PanelError):
    """Session missing or expired: go back to the login page"""


# ============================================================================
# ROW HELPERS
# ============================================================================

def _parse_datetime(value):
    s = clean(value)
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=TIMEZONE)
    return dt


def iso_from_any_date(value):
    """Sheet dates arrive as YYYY-MM-DD, DD/MM/YYYY or full ISO timestamps"""
    s = normalize_date(value)
    if not s or is_valid_date(s):
        return s
    dt = _parse_datetime(s)
    if dt is None:
        return s
    return dt.astimezone(TIMEZONE).date().isoformat()


def iso_timestamp(value):
    s = clean(value)
    dt = _parse_datetime(s)
    if dt is None:
        return s
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_booking_row(item):
    """Normalize one sheet row (list or dict) into a booking dict"""
    fields = {}
    for index, (name, keys) in enumerate(COLUMNS):
        value = None
        if isinstance(item, (list, tuple)):
            value = item[index] if index < len(item) else None
        elif isinstance(item, dict):
            for key in keys:
                if item.get(key) is not None:
                    value = item[key]
                    break
        fields[name] = value

    return {
        'nome': clean(fields['nome']),
        'telefono': clean(fields['telefono']),
        'tipo': clean(fields['tipo']).upper(),
        'dataISO': iso_from_any_date(fields['data']),
        'ora': clean(fields['ora']),
        's50': to_int(fields['s50']),
        's100': to_int(fields['s100']),
        's200': to_int(fields['s200']),
        'tot': to_int(fields['tot']),
        'indirizzo': clean(fields['indirizzo']),
        'stato': clean(fields['stato']).upper() or 'NUOVA',
        'note': clean(fields['note']),
        'timestampISO': iso_timestamp(fields['timestamp']),
    }


def parse_booking_rows(rows):
    bookings = [parse_booking_row(r) for r in rows or []]
    bookings.sort(key=lambda b: (f"{b['dataISO']} {b['ora']}".strip(), b['timestampISO']))
    return bookings


def booking_id(booking):
    """Timestamp when the row has one, otherwise a composite of the visible fields"""
    base = clean(booking.get('timestampISO'))
    if base:
        return base
    return '|'.join(str(booking.get(k, '')) for k in ('telefono', 'dataISO', 'ora', 'tipo', 'tot'))


def can_transition(current, new):
    return new in ALLOWED_TRANSITIONS.get((current or 'NUOVA').upper(), ())


def available_actions(booking):
    return ALLOWED_TRANSITIONS.get(booking.get('stato') or 'NUOVA', ())


# ============================================================================
# WHATSAPP MESSAGES
# ============================================================================

def normalize_phone(raw):
    """Keep digits and '+' only"""
    return re.sub(r'[^\d+]', '', clean(raw))


def format_date_it(value):
    """YYYY-MM-DD (or any ISO timestamp) as DD/MM/YYYY in the panel timezone"""
    s = clean(value)
    if not s:
        return ''
    if is_valid_date(s):
        y, m, d = s.split('-')
        return f"{d}/{m}/{y}"
    dt = _parse_datetime(s)
    if dt is None:
        return s
    return dt.astimezone(TIMEZONE).strftime('%d/%m/%Y')


def wa_text_confirm(booking):
    return (f"Ciao {booking.get('nome', '')}, ✅ la tua prenotazione del "
            f"{format_date_it(booking.get('dataISO'))} alle {booking.get('ora', '')} è CONFERMATA. Grazie!")


def wa_text_cancel(booking):
    return (f"Ciao {booking.get('nome', '')}, ❌ la tua prenotazione del "
            f"{format_date_it(booking.get('dataISO'))} alle {booking.get('ora', '')} è stata ANNULLATA. "
            f"Se vuoi riprenotare scrivici qui.")


# Characters encodeURIComponent leaves as they are
URI_COMPONENT_SAFE = "!*'()"

WA_TEXTS = {
    'CONFERMATA': wa_text_confirm,
    'ANNULLATA': wa_text_cancel,
}


def whatsapp_url(booking, text):
    """wa.me link for the booking's phone, None when there is no usable number"""
    phone = normalize_phone(booking.get('telefono')).replace('+', '')
    if not phone:
        return None
    return f"https://wa.me/{phone}?text={quote(text, safe=URI_COMPONENT_SAFE)}"


# ============================================================================
# HTTP CLIENT
# ============================================================================

class ApiClient:
    """Thin client for the gateway API, keeps the session cookie"""

    def __init__(self, base_url, session=None, timeout=15):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method, path, payload=None, default_error='Errore server.'):
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={'Cache-Control': 'no-store'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"{method} {path} failed: {e}")
            raise PanelError('Errore rete.')

        try:
            data = response.json()
        except ValueError:
            data = {'ok': False, 'error': 'Risposta non valida dal server.', 'details': response.text}
        if not isinstance(data, dict):
            data = {'ok': False, 'error': 'Risposta non valida dal server.'}

        if response.status_code == 401:
            raise Unauthorized(data.get('error') or 'Non autorizzato')
        if not response.ok or not data.get('ok'):
            raise PanelError(data.get('error') or default_error)
        return data

    # --- admin ---

    def login(self, password):
        self._request('POST', '/api/admin/login', {'password': password}, 'Login fallito.')

    def logout(self):
        try:
            self._request('POST', '/api/admin/logout')
        except PanelError as e:
            logger.warning(f"Logout request failed: {e}")
        self.session.cookies.clear()

    def list_bookings(self):
        data = self._request('GET', '/api/admin/bookings', default_error='Errore caricando prenotazioni.')
        rows = data.get('rows')
        return parse_booking_rows(rows if isinstance(rows, list) else [])

    def update_status(self, booking, stato):
        self._request('POST', '/api/admin/bookings', {
            'action': 'updateStatus',
            'stato': stato,
            'timestampISO': booking.get('timestampISO', ''),
            'telefono': booking.get('telefono', ''),
            'dataISO': booking.get('dataISO', ''),
            'ora': booking.get('ora', ''),
        }, 'Errore aggiornando lo stato.')

    def set_bookings_open(self, value):
        data = self._request('POST', '/api/admin/settings', {'value': bool(value)},
                             'Errore aggiornando prenotazioni.')
        return normalize_bookings_open(data)

    # --- public ---

    def get_settings(self):
        data = self._request('GET', '/api/settings', default_error='Errore settings.')
        return normalize_bookings_open(data)

    def submit_booking(self, form, bookings_open=None):
        """Check a BookingForm locally, then send it; nothing goes out when the form is rejected"""
        error = form.validate(bookings_open)
        if error:
            raise PanelError(error)
        data = self._request('POST', '/api/bookings', form.payload(), 'Errore invio.')
        return data.get('message', '')

    def chat(self, history, text):
        """Send one message, record both sides in the ChatHistory and return the reply"""
        text = clean(text)
        if not text:
            return None
        history.append('user', text)
        try:
            data = self._request('POST', '/api/chat', {'message': text, 'history': history.recent()},
                                 'Errore. Riprova tra poco.')
            reply = clean(data.get('reply')) or 'Errore. Riprova tra poco.'
        except PanelError as e:
            reply = 'Errore rete. Controlla connessione.' if str(e) == 'Errore rete.' else str(e)
        history.append('assistant', reply)
        return reply


# ============================================================================
# BOARD STATE
# ============================================================================

class StatusChange:
    """Tentative status change that can be undone if the gateway refuses it"""

    def __init__(self, board, booking, new_status):
        self.board = board
        self.id = booking_id(booking)
        self.new_status = new_status
        self.previous_status = booking.get('stato') or 'NUOVA'

    def apply(self):
        self.board._set_status(self.id, self.new_status)
        self.board.new_ids.discard(self.id)

    def revert(self):
        self.board._set_status(self.id, self.previous_status)


class BookingBoard:
    """
    Local copy of the bookings list.
    The first load only records what exists; later loads flag arrivals in NUOVA.
    """

    def __init__(self, client, alert=None, sound_on=lambda: True, notify=None):
        self.client = client
        self.alert = alert
        self.notify = notify
        self.sound_on = sound_on
        self.rows = []
        self.new_ids = set()
        self.visible = True
        self.error = ''
        self.busy_id = ''
        self._seen = set()
        self._first_load_done = False
        self._lock = threading.RLock()

    def load(self):
        """Fetch the list; Unauthorized is left to the caller (back to login)"""
        try:
            rows = self.client.list_bookings()
        except Unauthorized:
            raise
        except PanelError as e:
            with self._lock:
                self.error = str(e)
                self.rows = []
            return []
        with self._lock:
            self.error = ''
        return self.apply_rows(rows)

    def apply_rows(self, rows):
        """Replace the list and return bookings never seen before"""
        with self._lock:
            arrivals = self._detect_arrivals(rows)
            self._clean_new_flags(rows)
            self.rows = list(rows)
        return arrivals

    def _detect_arrivals(self, rows):
        ids = [booking_id(b) for b in rows]
        if not self._first_load_done:
            self._first_load_done = True
            self._seen = set(ids)
            return []

        arrivals = [b for b, bid in zip(rows, ids) if bid not in self._seen]
        self._seen.update(ids)
        if not arrivals or not self.visible:
            return arrivals

        self.new_ids.update(booking_id(b) for b in arrivals if b.get('stato') == 'NUOVA')
        if self.alert and self.sound_on():
            self.alert(arrivals)
        return arrivals

    def _clean_new_flags(self, rows):
        current = {booking_id(b): b for b in rows}
        for bid in list(self.new_ids):
            found = current.get(bid)
            if found is None or found.get('stato') != 'NUOVA':
                self.new_ids.discard(bid)

    def _set_status(self, bid, stato):
        with self._lock:
            self.rows = [dict(b, stato=stato) if booking_id(b) == bid else b for b in self.rows]

    def find(self, bid):
        with self._lock:
            for b in self.rows:
                if booking_id(b) == bid:
                    return b
        return None

    def change_status(self, bid, new_status):
        """
        Optimistically move a booking to new_status.
        Returns True on success; on failure the previous status is restored
        and the message is kept in self.error.
        """
        booking = self.find(bid)
        if booking is None:
            self.error = 'Prenotazione non trovata.'
            return False
        if not can_transition(booking.get('stato'), new_status):
            self.error = f"Passaggio non consentito: {booking.get('stato')} -> {new_status}"
            return False

        change = StatusChange(self, booking, new_status)
        change.apply()
        self.busy_id = bid
        self.error = ''
        try:
            self.client.update_status(booking, new_status)
        except PanelError as e:
            change.revert()
            self.error = str(e) or 'Errore aggiornando lo stato.'
            logger.warning(f"Status change {change.previous_status} -> {new_status} rolled back: {self.error}")
            return False
        finally:
            self.busy_id = ''

        logger.info(f"Booking {bid} moved to {new_status}")
        self._notify_customer(booking, new_status)
        self.load()
        return True

    def _notify_customer(self, booking, new_status):
        """Hand the WhatsApp link for confirmations and cancellations to the notify callback"""
        build_text = WA_TEXTS.get(new_status)
        if not self.notify or build_text is None:
            return
        url = whatsapp_url(booking, build_text(booking))
        if url:
            self.notify(url)

    def counts(self):
        c = {'NUOVA': 0, 'CONFERMATA': 0, 'CONSEGNATA': 0, 'ANNULLATA': 0}
        with self._lock:
            for b in self.rows:
                stato = b.get('stato') or 'NUOVA'
                if stato in c:
                    c[stato] += 1
            c['TUTTE'] = len(self.rows)
        return c

    def filtered(self, query='', status='TUTTE', tipo='TUTTI', date_from='', date_to=''):
        q = clean(query).lower()
        out = []
        with self._lock:
            rows = list(self.rows)
        for b in rows:
            if status != 'TUTTE' and b['stato'] != status:
                continue
            if tipo != 'TUTTI' and b['tipo'] != tipo:
                continue
            if date_from and b['dataISO'] and b['dataISO'] < date_from:
                continue
            if date_to and b['dataISO'] and b['dataISO'] > date_to:
                continue
            if q:
                blob = ' '.join(str(b[k]) for k in ('nome', 'telefono', 'tipo', 'dataISO', 'ora',
                                                    'stato', 'indirizzo', 'note')).lower()
                if q not in blob:
                    continue
            out.append(b)
        return out


# ============================================================================
# POLLING
# ============================================================================

class Poller:
    """
    Runs `task` every `interval` seconds on a daemon thread.
    Ticks are skipped while hidden; becoming visible triggers an immediate run.
    """

    def __init__(self, task, interval, name='poller'):
        self.task = task
        self.interval = interval
        self.name = name
        self.visible = True
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        self._stopped.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def set_visible(self, visible):
        was_visible = self.visible
        self.visible = bool(visible)
        if self.visible and not was_visible:
            self._wake.set()

    def run_once(self):
        try:
            self.task()
        except Exception as e:
            logger.error(f"{self.name} tick failed: {e}")

    def _run(self):
        while not self._stopped.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stopped.is_set():
                break
            if not self.visible:
                continue
            self.run_once()


# ============================================================================
# DASHBOARD
# ============================================================================

class Dashboard:
    """Board + settings flag + the two refresh loops"""

    def __init__(self, client, preferences, alert=None, notify=None):
        self.client = client
        self.preferences = preferences
        self.board = BookingBoard(client, alert=alert, sound_on=lambda: preferences.sound_on,
                                  notify=notify)
        self.bookings_open = None
        self.error = ''
        self.bookings_poller = Poller(self.refresh_bookings, BOOKINGS_REFRESH_SECONDS, 'bookings-poller')
        self.settings_poller = Poller(self.refresh_settings, SETTINGS_REFRESH_SECONDS, 'settings-poller')

    def refresh_bookings(self):
        return self.board.load()

    def refresh_settings(self):
        try:
            self.bookings_open = self.client.get_settings()
        except PanelError as e:
            logger.warning(f"Settings refresh failed: {e}")
            self.bookings_open = None
        return self.bookings_open

    def toggle_bookings(self):
        """Flip bookings_open (unknown counts as open) and re-read the real value"""
        target = not (True if self.bookings_open is None else self.bookings_open)
        self.bookings_open = target
        self.error = ''
        try:
            confirmed = self.client.set_bookings_open(target)
            if confirmed is not None:
                self.bookings_open = confirmed
        except PanelError as e:
            self.error = str(e) or 'Errore aggiornando prenotazioni.'
            self.refresh_settings()
            return False
        self.refresh_settings()
        return True

    def start(self):
        self.refresh_bookings()
        self.refresh_settings()
        self.bookings_poller.start()
        self.settings_poller.start()

    def stop(self):
        self.bookings_poller.stop()
        self.settings_poller.stop()

    def set_visible(self, visible):
        self.board.visible = bool(visible)
        self.bookings_poller.set_visible(visible)
        self.settings_poller.set_visible(visible)
