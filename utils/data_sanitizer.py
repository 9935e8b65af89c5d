"""
Data Sanitization for Payment Logs and Errors
Masks provider credentials, webhook signatures and vault ciphertext before they reach
log output or error messages returned to callers.
"""

import re
import json
import logging
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


class DataSanitizer:
    """Redaction of secret material in free text and structured payloads"""

    SENSITIVE_PATTERNS = {
        "stripe_key": re.compile(r"\b(sk|rk)_(test|live)_[A-Za-z0-9]{6,}"),
        "stripe_webhook_secret": re.compile(r"\bwhsec_[A-Za-z0-9]{6,}"),
        "vault_ciphertext": re.compile(r"\b[0-9a-f]{32}:[0-9a-f]{32}:[0-9a-f]+\b"),
        "basic_auth": re.compile(r"(?i)(basic|bearer)\s+[A-Za-z0-9+/=._-]{8,}"),
        "password": re.compile(r'(?i)(password[1-4]?|secret[_-]?key|api[_-]?key)(["\':=\s]+)([^\s"\',&]{4,})'),
        "signature": re.compile(r'(?i)(signaturevalue|token|v1)(["\':=\s]+)([a-fA-F0-9]{32,})'),
    }

    # Key fragments that mark a dictionary value as secret
    SENSITIVE_FIELDS = {
        "secret_key",
        "secretkey",
        "password",
        "webhook_secret",
        "api_key",
        "apikey",
        "trongrid_api_key",
        "authorization",
        "token",
        "signature",
        "signaturevalue",
        "stripe-signature",
        "tron-pro-api-key",
    }

    @classmethod
    def mask_secret(cls, value: Optional[str]) -> str:
        """Display form for a secret: first 4 and last 4 characters kept"""
        if not value:
            return ""
        if len(value) <= 8:
            return "••••••••"
        return f"{value[:4]}••••{value[-4:]}"

    @classmethod
    def sanitize_text(cls, text: Any, known_secrets: Optional[Iterable[str]] = None) -> str:
        """
        Mask sensitive patterns and any literal occurrence of known secret values

        Args:
            text: Text to sanitize
            known_secrets: Plaintext secrets currently in scope (e.g. decrypted credentials)

        Returns:
            Sanitized text
        """
        sanitized = text if isinstance(text, str) else str(text)

        for secret in known_secrets or ():
            if secret and len(secret) >= 4:
                sanitized = sanitized.replace(secret, REDACTED)

        for pattern_name, pattern in cls.SENSITIVE_PATTERNS.items():
            if pattern.groups >= 3:
                sanitized = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", sanitized)
            else:
                sanitized = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", sanitized)

        return sanitized

    @classmethod
    def is_sensitive_key(cls, key: Any) -> bool:
        # _<field>_set flags are booleans and stay readable
        key_lower = str(key).lower()
        if key_lower.startswith("_") and key_lower.endswith("_set"):
            return False
        return any(field in key_lower for field in cls.SENSITIVE_FIELDS)

    @classmethod
    def redact(cls, value: Any) -> Any:
        """Walk dicts and lists; secret-keyed values are replaced, strings are pattern-scrubbed"""
        if isinstance(value, dict):
            return {
                key: REDACTED if cls.is_sensitive_key(key) and item not in (None, "") else cls.redact(item)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [cls.redact(item) for item in value]
        if isinstance(value, str):
            return cls.sanitize_text(value)
        return value

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return cls.redact(data) if isinstance(data, dict) else data

    @classmethod
    def sanitize_error_message(cls, error_msg: Any, known_secrets: Optional[Iterable[str]] = None) -> str:
        """
        Provider wording is kept, secrets are not

        Traceback lines are dropped and the result is capped at 500 characters.
        """
        if not error_msg:
            return "Unknown error"

        lines = [
            line for line in cls.sanitize_text(str(error_msg), known_secrets).splitlines()
            if not line.startswith("Traceback") and "site-packages" not in line
        ]
        message = "\n".join(lines[:3])
        if len(message) > 500:
            message = message[:500] + "... [TRUNCATED]"
        return message if message.strip() else "Error details redacted"


def sanitize_for_log(data: Any) -> str:
    """One-line, redacted rendering of a payload, config blob or message"""
    if isinstance(data, (dict, list, tuple)):
        return json.dumps(DataSanitizer.redact(data), default=str)
    return DataSanitizer.sanitize_text(data)


def safe_error_log(error: Exception, context: Optional[Dict] = None) -> str:
    """'<ErrorType>: <redacted message>' plus redacted context, for logger calls"""
    line = f"{type(error).__name__}: {DataSanitizer.sanitize_error_message(error)}"
    if context:
        line += f" | context={sanitize_for_log(context)}"
    return line


def mask_secret(value: Optional[str]) -> str:
    return DataSanitizer.mask_secret(value)
