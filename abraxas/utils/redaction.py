"""Secret redaction utility for safe logging and error responses.

Prevents credential leakage in logs, persisted error messages and API
error responses. Repository URLs with embedded tokens, bearer headers
and sensitive key=value pairs are all replaced before a message leaves
the process.
"""

import re

_REDACTED = "***REDACTED***"

# Substring patterns matched case-insensitively against dict keys
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "password", "credential",
    "api_key", "encrypted",
})

# Patterns for detecting sensitive values in free-text error messages.
# Handles: key=value, Authorization: Bearer <token>, "key": "value",
# key = "quoted value", and https://<token>@host URLs.
_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|authorization|credential|"
    r"webhook_secret|access_token"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Pattern 1: Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # Pattern 2: JSON-style "key": "value" or "key":"value"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # Pattern 3: key = "quoted value" or key="quoted value"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\"[^\"]*\""
    r"|"
    # Pattern 4: key=value (unquoted, consumes until whitespace/end)
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)
_URL_USERINFO_PATTERN = re.compile(r"(?i)(https?://)[^/\s@]+@")


def _is_sensitive_key(key: str, sensitive_patterns: frozenset[str]) -> bool:
    """Check if a key matches any sensitive pattern (case-insensitive substring)."""
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in sensitive_patterns)


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Redact sensitive values from a dict for safe logging.

    Args:
        obj: Dict to redact (not mutated; a copy is returned).
        sensitive_patterns: Substring patterns whose matching keys' values
            should be replaced. Matching is case-insensitive.

    Returns:
        New dict with sensitive values replaced by '***REDACTED***'.
        Nested dicts and lists of dicts are handled recursively.
    """
    result = {}
    for key, value in obj.items():
        if _is_sensitive_key(key, sensitive_patterns):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value, sensitive_patterns)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item, sensitive_patterns) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def redact_url_credentials(url: str) -> str:
    """Strip userinfo (e.g. an access token) from an http(s) URL."""
    return _URL_USERINFO_PATTERN.sub(rf"\g<1>{_REDACTED}@", url)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize an error message for safe persistence and display.

    Redacts URL credentials and sensitive-looking key=value pairs, then
    truncates to max_length.

    Args:
        msg: Error message to sanitize (None passes through).
        max_length: Maximum length of the sanitized message.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = redact_url_credentials(msg)
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
