"""
Public booking form
Holds what the customer filled in, checks it before anything is sent and
builds the payload for POST /api/bookings
"""

from normalizers import BOX_SIZES, DEFAULT_STATUS, MAX_BOXES, box_summary, clean

SHOP_NAME = 'Arrosticini Abruzzesi'
CHANNEL = 'WEBAPP'
FULFILLMENTS = ('RITIRO', 'CONSEGNA')

SLOT_MINUTES = 15
MORNING = ((9, 0), (12, 30))
AFTERNOON = ((15, 0), (20, 30))

CLOSED_MESSAGE = 'Prenotazioni momentaneamente chiuse. Riprova più tardi.'


def build_slots(start, end, step=SLOT_MINUTES):
    """HH:MM slots from start to end inclusive, every `step` minutes"""
    t = start[0] * 60 + start[1]
    last = end[0] * 60 + end[1]
    slots = []
    while t <= last:
        slots.append(f"{t // 60:02d}:{t % 60:02d}")
        t += step
    return slots


def time_options():
    return {
        'Mattina': build_slots(*MORNING),
        'Pomeriggio': build_slots(*AFTERNOON),
    }


class BookingForm:
    """Form state: customer details, pickup or delivery, box counts"""

    def __init__(self, shop_name=SHOP_NAME):
        self.shop_name = shop_name
        self.nome = ''
        self.telefono = ''
        self.tipo = 'RITIRO'
        self.data = ''
        self.ora = ''
        self.indirizzo = ''
        self.note = ''
        self.honeypot = ''
        self.boxes = {size: 0 for size in BOX_SIZES}

    # --- box steppers ---

    def set_boxes(self, size, count):
        if size not in self.boxes:
            raise ValueError(f"Unknown box size: {size}")
        self.boxes[size] = max(0, min(MAX_BOXES, int(count)))
        return self.boxes[size]

    def increment(self, size):
        return self.set_boxes(size, self.boxes.get(size, 0) + 1)

    def decrement(self, size):
        return self.set_boxes(size, self.boxes.get(size, 0) - 1)

    @property
    def total(self):
        return sum(size * n for size, n in self.boxes.items())

    @property
    def summary(self):
        return box_summary(self.boxes)

    @property
    def label(self):
        """Human-readable recap, e.g. '50×1 · 200×2'"""
        parts = [f"{size}×{n}" for size, n in self.boxes.items() if n > 0]
        return ' · '.join(parts)

    @property
    def needs_address(self):
        return self.tipo == 'CONSEGNA'

    # --- submit ---

    def validate(self, bookings_open=None):
        """Return the message to show, or None when the form can be sent"""
        if bookings_open is False:
            return CLOSED_MESSAGE
        if not clean(self.nome) or not clean(self.telefono):
            return 'Inserisci nome e telefono.'
        if not clean(self.data):
            return 'Seleziona una data.'
        if not clean(self.ora):
            return 'Seleziona un orario.'
        if self.total <= 0:
            return 'Seleziona almeno una scatola (50/100/200).'
        if self.tipo not in FULFILLMENTS:
            return 'Tipo non valido.'
        if self.needs_address and not clean(self.indirizzo):
            return "Per consegna serve l'indirizzo."
        return None

    def payload(self):
        summary = self.summary
        return {
            'nome': clean(self.nome),
            'telefono': clean(self.telefono),
            'tipo': self.tipo,
            'ritiroConsegna': self.tipo,
            'data': clean(self.data),
            'ora': clean(self.ora),
            'scatole': summary,
            'ordine': summary,
            'scatola50': self.boxes[50],
            'scatola100': self.boxes[100],
            'scatola200': self.boxes[200],
            'totaleArrosticini': self.total,
            'riepilogoScatole': self.label,
            'indirizzo': clean(self.indirizzo) if self.needs_address else '',
            'stato': DEFAULT_STATUS,
            'note': clean(self.note),
            'canale': CHANNEL,
            'negozio': self.shop_name,
            'honeypot': self.honeypot,
        }
