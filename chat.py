"""
Assistant chat backend
Forwards the widget conversation to the OpenAI API
"""

import os
import logging

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

CHAT_MODEL = os.getenv('CHAT_MODEL', 'gpt-4o-mini')
CHAT_HISTORY_LIMIT = int(os.getenv('CHAT_HISTORY_LIMIT', '20'))
MAX_MESSAGE_CHARS = 2000

SYSTEM_PROMPT = (
    "Sei l'assistente del laboratorio di arrosticini abruzzesi. "
    "Rispondi in italiano, in modo breve e cordiale. "
    "Vendiamo scatole da 50, 100 e 200 arrosticini, con ritiro in laboratorio o consegna a domicilio. "
    "Per prenotare si usa il modulo nella pagina: nome, telefono, data, orario, scatole e, "
    "per la consegna, l'indirizzo. Il locale conferma ogni prenotazione su WhatsApp. "
    "Non inventare prezzi o orari che non conosci: invita a chiamare il laboratorio."
)


class ChatUnavailable(Exception):
    pass


def get_client():
    api_key = (os.getenv('OPENAI_API_KEY') or '').strip()
    if not api_key:
        return None
    return OpenAI(api_key=api_key)


def sanitize_history(history, limit=CHAT_HISTORY_LIMIT):
    """Keep only user/assistant turns with text content, last `limit` of them"""
    if not isinstance(history, list):
        return []

    cleaned = []
    for item in history:
        if not isinstance(item, dict):
            continue
        role = item.get('role')
        content = item.get('content')
        if role not in ('user', 'assistant') or not isinstance(content, str):
            continue
        content = content.strip()[:MAX_MESSAGE_CHARS]
        if content:
            cleaned.append({'role': role, 'content': content})

    return cleaned[-limit:] if limit else cleaned


def build_messages(message, history):
    messages = sanitize_history(history)
    last = messages[-1] if messages else None
    if not last or last['role'] != 'user' or last['content'] != message:
        messages.append({'role': 'user', 'content': message})
    return [{'role': 'system', 'content': SYSTEM_PROMPT}] + messages


def ask_assistant(client, message, history=None):
    """Send the conversation and return the assistant reply text"""
    messages = build_messages(message, history or [])
    try:
        completion = client.chat.completions.create(model=CHAT_MODEL, messages=messages)
    except OpenAIError as e:
        logger.error(f"Chat completion failed: {e}")
        raise ChatUnavailable(str(e))

    reply = (completion.choices[0].message.content or '').strip() if completion.choices else ''
    if not reply:
        raise ChatUnavailable('Risposta vuota')
    return reply
