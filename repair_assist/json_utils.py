"""
JSON extraction and repair for AI provider output.

Providers are asked for a bare JSON object but often wrap it in prose or
markdown fences, wrap long strings across lines, leave trailing commas, or
stop mid-object when they hit the token limit.
"""
import json
import re
import logging

from .errors import JSONExtractionError

logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r',\s*([}\]])')


def _repair_truncated_json(text: str) -> str:
    """Close whatever strings, arrays and objects were left open.

    Walks the text tracking string state and a bracket stack, then appends
    the missing closing tokens in reverse order.
    """
    text = text.rstrip()
    text = re.sub(r',\s*$', '', text)

    stack = []
    in_string = False
    i = 0
    while i < len(text):
        c = text[i]
        if c == '\\' and in_string:
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        elif not in_string:
            if c in ('{', '['):
                stack.append(c)
            elif c == '}' and stack and stack[-1] == '{':
                stack.pop()
            elif c == ']' and stack and stack[-1] == '[':
                stack.pop()
        i += 1

    if in_string:
        text += '"'

    for opener in reversed(stack):
        text += ']' if opener == '[' else '}'

    return text


def _fix_newlines_in_json_strings(text: str) -> str:
    """Replace literal newlines inside JSON string values with spaces.

    Long repair steps come back wrapped across lines, which is invalid JSON.
    Newlines between tokens are left alone.
    """
    result = []
    in_string = False
    i = 0
    while i < len(text):
        c = text[i]
        if c == '\\' and in_string and i + 1 < len(text):
            result.append(c)
            result.append(text[i + 1])
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        if c == '\n' and in_string:
            result.append(' ')
        else:
            result.append(c)
        i += 1
    return ''.join(result)


def extract_json(text: str) -> dict:
    """Extract the JSON object from a model response.

    Raises:
        JSONExtractionError: if no object can be located or repaired.
    """
    if not text:
        raise JSONExtractionError("Empty model response")

    fenced = re.search(r'```(?:json)?\s*([\s\S]*?)```', text)
    if fenced:
        text = fenced.group(1)

    start = text.find('{')
    end = text.rfind('}')
    if start != -1 and end > start:
        text = text[start:end + 1]
    elif start != -1:
        # No closing brace, output was cut off
        text = text[start:]
    else:
        logger.debug(f"No JSON object found in response: {text[:200]}...")
        raise JSONExtractionError("Model response contained no JSON object")

    text = _fix_newlines_in_json_strings(text)

    # Attempt 1: direct parse
    try:
        return _as_object(json.loads(text))
    except json.JSONDecodeError as e:
        logger.debug(f"JSON parse error (attempt 1 - direct): {e}")

    # Attempt 2: missing commas between lines, trailing commas
    try:
        fixed = re.sub(r'"\s*\n\s*"', '",\n"', text)
        fixed = _TRAILING_COMMA.sub(r'\1', fixed)
        return _as_object(json.loads(fixed))
    except json.JSONDecodeError as e:
        logger.debug(f"JSON parse error (attempt 2 - comma fix): {e}")

    # Attempt 3: close open structures
    try:
        repaired = _TRAILING_COMMA.sub(r'\1', _repair_truncated_json(text))
        result = _as_object(json.loads(repaired))
        logger.info("JSON repaired from truncated output")
        return result
    except json.JSONDecodeError as e:
        logger.debug(f"JSON parse error (attempt 3 - truncation repair): {e}")

    raise JSONExtractionError("Failed to parse model response as JSON")


def _as_object(value) -> dict:
    if not isinstance(value, dict):
        raise JSONExtractionError(f"Expected a JSON object, got {type(value).__name__}")
    return value
