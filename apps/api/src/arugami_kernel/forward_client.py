from __future__ import annotations

from typing import Any

import httpx

from arugami_kernel.schemas import ForwardResult
from arugami_kernel.security import redact_sensitive_text

FORWARD_TIMEOUT_SECONDS = 5.0


def forward_payload(
    target_url: str | None,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout: float = FORWARD_TIMEOUT_SECONDS,
) -> ForwardResult:
    if not target_url:
        return ForwardResult(
            delivered=False,
            target_url=None,
            message="forward url not configured",
        )

    try:
        response = httpx.post(
            target_url,
            json=payload,
            headers=headers,
            timeout=timeout,
        )
        response.raise_for_status()
        return ForwardResult(
            delivered=True,
            target_url=target_url,
            status_code=response.status_code,
            message="delivered",
        )
    except Exception as exc:  # noqa: BLE001
        sanitized_error = redact_sensitive_text(str(exc))
        return ForwardResult(
            delivered=False,
            target_url=target_url,
            message=f"forward failed: {sanitized_error}",
        )
