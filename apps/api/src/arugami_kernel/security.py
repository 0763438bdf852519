from __future__ import annotations

import re
from typing import Any

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|passwd|secret)\b(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_QUERY_RE = re.compile(
    r"(?i)([?&](?:api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|secret)=)([^&\s]+)"
)
_SENSITIVE_BEARER_RE = re.compile(r"(?i)\b(authorization\s*[:=]\s*bearer\s+)([^\s,;]+)")
_SENSITIVE_KEY_RE = re.compile(
    r"(?i)^(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|passwd|secret|authorization|"
    r"email|phone|first[_-]?name|last[_-]?name|full[_-]?name)$"
)

REDACTED = "[REDACTED]"


def redact_sensitive_text(value: str | None) -> str | None:
    if value is None:
        return None

    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SENSITIVE_BEARER_RE.sub(r"\1[REDACTED]", redacted)
    return redacted


def redact_payload(value: Any) -> Any:
    """Strip credentials and contact PII from a receipt payload.

    Receipts carry metadata only; keys that name a secret or a person's
    contact details are masked, and free text is scrubbed of inline secrets.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if _SENSITIVE_KEY_RE.match(str(key)) and item is not None else redact_payload(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_payload(item) for item in value]
    if isinstance(value, str):
        return redact_sensitive_text(value)
    return value
