"""
Input sanitization for user-supplied diagnosis requests.
"""

import re
from typing import Optional


MAX_DESCRIPTION_LENGTH = 5000
MAX_ANSWER_LENGTH = 1000
MAX_IMAGE_REFS = 5
MAX_DATA_URI_LENGTH = 10 * 1024 * 1024

DEVICE_CATEGORIES = ("device", "instrument", "component", "pcb", "board")
DEFAULT_CATEGORY = "device"

_DATA_URI = re.compile(r'^data:image/(png|jpe?g|webp|gif|bmp);base64,[A-Za-z0-9+/=\s]+$', re.IGNORECASE)


def sanitize_text(
    text: str,
    max_length: Optional[int] = None,
    strip_html: bool = True
) -> str:
    """Sanitize text input bound for prompts, search queries and keyword matching.

    Tags are removed but entities are not escaped; nothing here is rendered as HTML.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length (truncates if exceeded)
        strip_html: Whether to strip HTML tags

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    text = text.strip()

    if strip_html:
        text = _strip_html_tags(text)

    text = _remove_control_chars(text)

    if max_length and len(text) > max_length:
        text = text[:max_length]

    return text


def sanitize_description(text: str) -> str:
    return sanitize_text(text, max_length=MAX_DESCRIPTION_LENGTH)


def sanitize_answer(text: str) -> str:
    return sanitize_text(text, max_length=MAX_ANSWER_LENGTH)


def normalize_category(category: Optional[str]) -> str:
    """Map a free-form category tag onto the known set; unknown tags become 'device'."""
    if not category:
        return DEFAULT_CATEGORY
    value = category.strip().lower()
    if value in DEVICE_CATEGORIES:
        return value
    # Plural and spaced forms the mobile client sends
    value = value.rstrip("s").replace(" ", "")
    if value in DEVICE_CATEGORIES:
        return value
    if value in ("circuitboard", "printedcircuitboard"):
        return "pcb"
    return DEFAULT_CATEGORY


def validate_image_ref(ref: str) -> bool:
    """Accept https URLs and base64 image data URIs."""
    if not ref:
        return False
    if ref.startswith("https://"):
        return len(ref) <= 2048 and " " not in ref
    if ref.startswith("data:"):
        return len(ref) <= MAX_DATA_URI_LENGTH and bool(_DATA_URI.match(ref))
    return False


def _strip_html_tags(text: str) -> str:
    """Remove HTML tags from text."""
    text = re.sub(r'<script[^>]*>.*?</script>', '', text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r'<style[^>]*>.*?</style>', '', text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r'<[^>]+>', '', text)
    return text


def _remove_control_chars(text: str) -> str:
    """Remove potentially dangerous control characters."""
    return re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
