"""
Sanitizer: clean and validate untrusted strings, flag injection attempts.

Every sanitizer is a pure function ``(raw) -> cleaned``. Typed sanitizers
(email, name, phone, URL) return an empty string when the cleaned value
does not pass its format check, never a partially cleaned value.

``detect_injection_pattern`` and ``detect_xss_pattern`` are heuristics,
not parsers. They do not replace escaping or parameterized queries.
"""
import re
import html
import logging
from typing import Any, Optional

import nh3
from pydantic import BaseModel, EmailStr, HttpUrl, TypeAdapter, ValidationError

from .logger import SecurityLogger

logger = logging.getLogger("navigator.sanitizer")

MAX_INPUT_LENGTH = 10_000
MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 254
MAX_UPLOAD_SIZE = 5 * 1024 * 1024

ALLOWED_TAGS = {
    "h1", "h2", "h3", "h4", "h5", "h6",
    "p", "br", "strong", "em", "u", "i", "b",
    "ul", "ol", "li", "a", "span", "div",
}
ALLOWED_ATTRIBUTES = {
    "*": {"title", "alt", "class", "id"},
    "a": {"href", "title"},
}
ALLOWED_URL_SCHEMES = {"http", "https", "mailto"}

DEFAULT_UPLOAD_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DANGEROUS_SUBSTRINGS = re.compile(
    r"javascript:|vbscript:|data:|on\w+\s*=", re.IGNORECASE
)
_DANGEROUS_URL_SCHEME = re.compile(
    r"^\s*(?:javascript|vbscript|data|file):", re.IGNORECASE
)
_URL_UNSAFE_CHARS = re.compile(r"[\s<>\"'\x00-\x1f\x7f]")
_MARKUP = re.compile(r"<[^>]*>")
_NAME_STRIP = re.compile(r"[<>\"'&]")
_NAME_FORMAT = re.compile(r"[^\W\d_](?:[^\W\d_]|[\s.,\-])*")
_PHONE_STRIP = re.compile(r"[^\d+\-()\s]")
_PHONE_FORMAT = re.compile(r"\+?[\d\s\-()]{10,}")

# Ordered: keyword+quote combinations, stacked statements, keyword sequences.
SQL_INJECTION_PATTERNS = [
    re.compile(r"(?:'|%27)\s*(?:or|and)\s+[^=]+=", re.IGNORECASE),
    re.compile(r"(?:'|%27)\s*(?:;|%3b)", re.IGNORECASE),
    re.compile(r"(?:'|%27)\s*(?:--|#|/\*)", re.IGNORECASE),
    re.compile(r"(?:'|%27)\s*union\b", re.IGNORECASE),
    re.compile(
        r";\s*(?:drop|delete|insert|update|alter|create|truncate|exec)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bunion(?:\s+|\+)(?:all(?:\s+|\+))?select\b", re.IGNORECASE),
    re.compile(r"\bdrop(?:\s+|\+)(?:table|database)\b", re.IGNORECASE),
    re.compile(r"\binsert(?:\s+|\+)into\b", re.IGNORECASE),
    re.compile(r"\bdelete(?:\s+|\+)from\b", re.IGNORECASE),
    re.compile(r"\bupdate(?:\s+|\+)\w+(?:\s+|\+)set\b", re.IGNORECASE),
    re.compile(r"\bexec(?:\s|\+)+(?:s|x)p\w+", re.IGNORECASE),
]

XSS_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<script\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"<object", re.IGNORECASE),
    re.compile(r"<embed", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
]

_email_adapter = TypeAdapter(EmailStr)
_url_adapter = TypeAdapter(HttpUrl)


class ValidationResult(BaseModel):
    is_valid: bool
    sanitized: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Markup and plain text
# ---------------------------------------------------------------------------

def sanitize_html(raw: str) -> str:
    """Keep only allow-listed tags and attributes.

    Script and style elements are removed together with their content,
    comments are stripped and links may only use http, https or mailto.
    The output is a fixed point: sanitizing it again changes nothing.
    """
    if not raw or not isinstance(raw, str):
        return ""
    return nh3.clean(
        raw,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        url_schemes=ALLOWED_URL_SCHEMES,
        strip_comments=True,
    )


def escape_html(raw: str) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    return html.escape(raw, quote=True)


def sanitize_input(raw: str) -> str:
    """Plain-text cleaning for free-form fields.

    Trims, strips control characters, escapes HTML, removes script URL
    schemes and inline event handler fragments, then caps the length.
    """
    if not raw or not isinstance(raw, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", raw.strip())
    cleaned = escape_html(cleaned)
    # removal can join fragments into a new match, e.g. "javajavascript:script:"
    while True:
        stripped = _DANGEROUS_SUBSTRINGS.sub("", cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped
    capped = cleaned[:MAX_INPUT_LENGTH]
    # every "&" left after escaping opens an entity; never return half of one
    amp = capped.rfind("&")
    if amp != -1 and ";" not in capped[amp:]:
        capped = capped[:amp]
    return capped


# ---------------------------------------------------------------------------
# Typed sanitizers
# ---------------------------------------------------------------------------

def sanitize_email(raw: str) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    candidate = raw.strip().lower()
    if re.search(r"[\r\n]", candidate) or len(candidate) > MAX_EMAIL_LENGTH:
        return ""
    try:
        return _email_adapter.validate_python(candidate)
    except ValidationError:
        logger.debug("Rejected malformed email address")
        return ""


def sanitize_url(raw: str) -> str:
    """Return the trimmed URL when it is a valid http(s) URL, else ``""``."""
    if not raw or not isinstance(raw, str):
        return ""
    candidate = raw.strip()
    if _DANGEROUS_URL_SCHEME.match(candidate):
        logger.debug("Rejected URL with dangerous scheme")
        return ""
    if _URL_UNSAFE_CHARS.search(candidate):
        logger.debug("Rejected URL with whitespace, quotes or markup")
        return ""
    try:
        _url_adapter.validate_python(candidate)
    except ValidationError:
        return ""
    return candidate


def sanitize_name(raw: str, max_length: int = MAX_NAME_LENGTH) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", _NAME_STRIP.sub("", raw.strip()))
    cleaned = cleaned[:max_length].strip()
    if not _NAME_FORMAT.fullmatch(cleaned):
        return ""
    return cleaned


def sanitize_phone(raw: str) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    cleaned = _PHONE_STRIP.sub("", raw).strip()
    if not _PHONE_FORMAT.fullmatch(cleaned):
        return ""
    return cleaned


_SANITIZERS = {
    "email": sanitize_email,
    "name": sanitize_name,
    "url": sanitize_url,
    "html": sanitize_html,
    "phone": sanitize_phone,
    "text": sanitize_input,
}


def sanitize_by_type(raw: str, kind: str = "text") -> str:
    """Dispatch to the sanitizer for ``kind``; unknown kinds use plain text."""
    return _SANITIZERS.get(kind, sanitize_input)(raw)


def validate(raw: str, kind: str = "text") -> ValidationResult:
    """Sanitize ``raw`` and report whether it is acceptable.

    Typed kinds are valid when their sanitizer keeps a value. Free text
    and names are additionally rejected when they carry an injection
    pattern.
    """
    sanitized = sanitize_by_type(raw, kind)
    is_valid = bool(sanitized)
    if is_valid and kind in ("text", "name"):
        is_valid = not detect_injection_pattern(raw)
    return ValidationResult(is_valid=is_valid, sanitized=sanitized)


# ---------------------------------------------------------------------------
# Structured data
# ---------------------------------------------------------------------------

def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        if _MARKUP.search(value):
            return sanitize_html(value)
        return sanitize_input(value)
    if isinstance(value, dict):
        return sanitize_form_data(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    return value


def sanitize_form_data(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively sanitize every string leaf of a form payload.

    Strings that look like markup go through ``sanitize_html``, every
    other string through ``sanitize_input``. Non-string values are kept.
    """
    if not isinstance(data, dict):
        return {}
    return {key: _sanitize_value(value) for key, value in data.items()}


def validate_file_upload(
    filename: str,
    size: int,
    content_type: str,
    allowed_types: tuple[str, ...] = DEFAULT_UPLOAD_TYPES,
    max_size: int = MAX_UPLOAD_SIZE,
) -> bool:
    """Check an upload's size, declared type and name."""
    if not filename or size is None:
        return False
    if size < 0 or size > max_size:
        return False
    if content_type not in allowed_types:
        return False
    name = filename.lower()
    if "../" in name or "..\\" in name or ".php" in name:
        return False
    if _CONTROL_CHARS.search(name):
        return False
    return True


# ---------------------------------------------------------------------------
# Threat detection
# ---------------------------------------------------------------------------

def detect_injection_pattern(raw: str) -> bool:
    """True when ``raw`` matches a common SQL injection idiom."""
    if not raw or not isinstance(raw, str):
        return False
    return any(pattern.search(raw) for pattern in SQL_INJECTION_PATTERNS)


def detect_xss_pattern(raw: str) -> bool:
    if not raw or not isinstance(raw, str):
        return False
    return any(pattern.search(raw) for pattern in XSS_PATTERNS)


def screen_input(
    raw: str,
    location: str,
    security_logger: Optional[SecurityLogger] = None,
) -> list[str]:
    """Look for SQL injection and XSS in ``raw`` and report what was found.

    Each detection is recorded with ``security_logger`` when one is given.

    Returns:
        Detected threat kinds: ``"sql_injection"`` and/or ``"xss"``.
    """
    threats = []
    if detect_injection_pattern(raw):
        threats.append("sql_injection")
        if security_logger is not None:
            security_logger.log_sql_injection(raw, location)
    if detect_xss_pattern(raw):
        threats.append("xss")
        if security_logger is not None:
            security_logger.log_xss_attempt(raw, location)
    if threats:
        logger.info("Threats %s detected at %s", threats, location)
    return threats
