"""
Client-side persisted state
Panel preferences and assistant chat history behind a small key/value port
"""

import os
import json
import logging
import tempfile

logger = logging.getLogger(__name__)

VIEW_MODES = ('AUTO', 'TABELLA', 'CARD')
TYPE_FILTERS = ('TUTTI', 'CONSEGNA', 'RITIRO')

CHAT_KEEP = 80
CHAT_SEND = 20

WELCOME_MESSAGE = {
    'role': 'assistant',
    'content': (
        "Ciao! Sono l'assistente del laboratorio. Dimmi cosa ti serve: orari, "
        "ritiro/consegna, come prenotare scatole 50/100/200, info generali."
    ),
}


# ============================================================================
# STORES
# ============================================================================

class MemoryStore:
    """Key/value store kept in memory"""

    def __init__(self, data=None):
        self._data = dict(data or {})

    def get(self, key, default=None):
        return self._data.get(key, default)

    def set(self, key, value):
        self._data[key] = value


class JsonFileStore:
    """Key/value store persisted as a single JSON file"""

    def __init__(self, path):
        self.path = path

    def _load(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key, default=None):
        return self._load().get(key, default)

    def set(self, key, value):
        data = self._load()
        data[key] = value

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


# ============================================================================
# PREFERENCES
# ============================================================================

class Preferences:
    """Panel preferences: sound toggle, view mode, type filter"""

    SOUND_KEY = 'admin_sound'
    VIEW_KEY = 'admin_view_mode'
    TYPE_KEY = 'admin_type_filter'

    def __init__(self, store):
        self.store = store

    @property
    def sound_on(self):
        value = self.store.get(self.SOUND_KEY)
        return value if isinstance(value, bool) else True

    @sound_on.setter
    def sound_on(self, value):
        self.store.set(self.SOUND_KEY, bool(value))

    @property
    def view_mode(self):
        value = self.store.get(self.VIEW_KEY)
        return value if value in VIEW_MODES else 'AUTO'

    @view_mode.setter
    def view_mode(self, value):
        if value not in VIEW_MODES:
            raise ValueError(f"Unknown view mode: {value}")
        self.store.set(self.VIEW_KEY, value)

    @property
    def type_filter(self):
        value = self.store.get(self.TYPE_KEY)
        return value if value in TYPE_FILTERS else 'TUTTI'

    @type_filter.setter
    def type_filter(self, value):
        if value not in TYPE_FILTERS:
            raise ValueError(f"Unknown type filter: {value}")
        self.store.set(self.TYPE_KEY, value)

    def cycle_view_mode(self):
        """AUTO -> TABELLA -> CARD -> AUTO"""
        self.view_mode = _next(VIEW_MODES, self.view_mode)
        return self.view_mode

    def cycle_type_filter(self):
        """TUTTI -> CONSEGNA -> RITIRO -> TUTTI"""
        self.type_filter = _next(TYPE_FILTERS, self.type_filter)
        return self.type_filter


def _next(options, current):
    return options[(options.index(current) + 1) % len(options)]


# ============================================================================
# CHAT HISTORY
# ============================================================================

class ChatHistory:
    """Assistant conversation, capped to the last `keep` messages"""

    KEY = 'chat_history_v1'

    def __init__(self, store, keep=CHAT_KEEP):
        self.store = store
        self.keep = keep

    @property
    def messages(self):
        saved = self.store.get(self.KEY)
        if isinstance(saved, list):
            valid = [m for m in saved
                     if isinstance(m, dict)
                     and m.get('role') in ('user', 'assistant')
                     and isinstance(m.get('content'), str)]
            if valid:
                return valid
        return [dict(WELCOME_MESSAGE)]

    def _save(self, messages):
        self.store.set(self.KEY, messages[-self.keep:])

    def append(self, role, content):
        if role not in ('user', 'assistant'):
            raise ValueError(f"Unknown role: {role}")
        messages = self.messages
        messages.append({'role': role, 'content': content})
        self._save(messages)

    def recent(self, n=CHAT_SEND):
        return self.messages[-n:]

    def clear(self):
        self._save([dict(WELCOME_MESSAGE)])
