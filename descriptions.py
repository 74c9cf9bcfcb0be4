# Product description generation through the hosted Gemini text model
# One POST to the generateContent REST endpoint per call, no retries.

import json
from urllib.request import Request, urlopen

from flask import current_app

DEFAULT_MODEL = 'gemini-2.0-flash'
DEFAULT_API_URL = 'https://generativelanguage.googleapis.com/v1beta'
DEFAULT_TIMEOUT = 20  # seconds

# Fixed Arabic prompt: a short, appealing description for a dental supplies
# catalog mentioning key features, uses and warnings, as a 3-4 sentence paragraph.
PROMPT_TEMPLATE = (
    'اكتب وصفًا موجزًا وجذابًا للمنتج التالي مخصّصًا لتطبيق إدارة مستلزمات طب الأسنان. '
    'اذكر المزايا الرئيسية، والاستخدامات، وأي تحذيرات مناسبة.\n'
    '\n'
    'اسم المنتج: {product_name}\n'
    '\n'
    'صيغة الإخراج: فقرة عربية قصيرة (3-4 جمل).'
)


class DescriptionError(Exception):
    """The upstream model call failed or returned an unreadable response."""


class MissingCredential(DescriptionError):
    """No API key is configured."""


def build_prompt(product_name):
    return PROMPT_TEMPLATE.format(product_name=product_name)


def _extract_text(body):
    candidates = body.get('candidates') or []
    if not candidates:
        return ''
    parts = (candidates[0].get('content') or {}).get('parts') or []
    return ''.join(part.get('text', '') for part in parts)


def generate_description(product_name):
    """
    Ask the model for a short product description.

    Raises ValueError for an empty name, MissingCredential when GEMINI_API_KEY
    is not configured and DescriptionError for any upstream failure.
    """
    if not isinstance(product_name, str) or not product_name.strip():
        raise ValueError('Product name cannot be empty')

    config = current_app.config
    api_key = config.get('GEMINI_API_KEY')
    if not api_key:
        raise MissingCredential('GEMINI_API_KEY not set')

    model = config.get('GEMINI_MODEL') or DEFAULT_MODEL
    api_url = (config.get('GEMINI_API_URL') or DEFAULT_API_URL).rstrip('/')
    timeout = config.get('DESCRIPTION_TIMEOUT') or DEFAULT_TIMEOUT

    payload = {
        'contents': [
            {'role': 'user', 'parts': [{'text': build_prompt(product_name.strip())}]},
        ],
    }
    request = Request(
        f'{api_url}/models/{model}:generateContent',
        data=json.dumps(payload).encode('utf-8'),
        headers={'Content-Type': 'application/json', 'x-goog-api-key': api_key},
        method='POST',
    )

    try:
        with urlopen(request, timeout=timeout) as response:
            body = json.loads(response.read().decode('utf-8'))
    except (OSError, ValueError) as exc:
        # URLError/HTTPError and socket timeouts are OSErrors; bad JSON is a ValueError
        current_app.logger.warning('Description request for %r failed: %s', product_name, exc)
        raise DescriptionError(str(exc)) from exc

    if not isinstance(body, dict):
        raise DescriptionError('Unexpected response from the description service')
    return _extract_text(body)
