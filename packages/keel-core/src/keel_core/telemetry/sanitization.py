"""Sanitize error messages before recording them on spans and run records.

Tool stderr routinely echoes credentials (registry logins, SonarQube tokens,
key passwords). These are redacted before the text leaves the process.
"""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret_key|access_key|token|api_key|authorization|credential)"
    r"\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_URL_CREDENTIAL_PATTERN = re.compile(
    r"://[^@/\s]+:[^@/\s]+@",
)
_PEM_BLOCK_PATTERN = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials in ``msg`` and truncate it to ``max_length``.

    Example:
        >>> sanitize_error_message("Failed: password=secret123 at host")
        'Failed: password=<REDACTED> at host'
    """
    sanitized = _PEM_BLOCK_PATTERN.sub("<REDACTED PRIVATE KEY>", msg)
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", sanitized)
    sanitized = _SENSITIVE_KEY_PATTERN.sub(
        lambda m: m.group(0).split("=", 1)[0] + "=<REDACTED>"
        if "=" in m.group(0)
        else m.group(0).split(":", 1)[0] + ": <REDACTED>",
        sanitized,
    )
    return sanitized[:max_length]


__all__ = ["sanitize_error_message"]
