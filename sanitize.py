"""Cleaning for untrusted text that is echoed back to browsers.

Chat messages and display names go through the same pipeline: newline
normalization, control character removal, trimming, length cap and HTML
escaping. The output is stable under repeated application, so text that was
already sanitized (for example a name stored on a membership record) can be
passed through again without double escaping.
"""

import re

from constants import MAX_CHAT_LENGTH, MAX_NAME_LENGTH

_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#39;",
    "`": "&#96;",
    "/": "&#x2F;",
}

_ENTITY = r"&(?:amp|lt|gt|quot|#39|#96|#x2F);"

# newline (\x0a), tab (\x09) and carriage return (normalized away earlier) survive
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]+")
_ESCAPE_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|#39|#96|#x2F);)|[<>\"'`/]")
_TOKEN_RE = re.compile(_ENTITY + r"|.", re.DOTALL)


def escape_html(text: str) -> str:
    """Escape the HTML-sensitive characters, leaving known entities intact."""
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], text)


def _truncate(text: str, max_length: int) -> str:
    # an entity counts as the single character it stands for
    tokens = _TOKEN_RE.findall(text)
    if len(tokens) <= max_length:
        return text
    return "".join(tokens[:max_length])


def _clean(text: str, max_length: int) -> str:
    text = _CONTROL_RE.sub("", text).strip()
    text = _truncate(text, max_length).strip()
    return escape_html(text)


def sanitize_message(value, max_length: int = MAX_CHAT_LENGTH) -> str:
    if not isinstance(value, str):
        return ""
    text = value.replace("\r\n", "\n").replace("\r", "\n")
    return _clean(text, max_length)


def sanitize_display_name(value, max_length: int = MAX_NAME_LENGTH) -> str:
    if not isinstance(value, str):
        return ""
    text = value.replace("\r", " ").replace("\n", " ")
    return _clean(text, max_length)
