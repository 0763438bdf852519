from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field


def _env_or_default(name: str, default: str, env: Mapping[str, str] | None = None) -> str:
    value = (os.environ if env is None else env).get(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "", env: Mapping[str, str] | None = None) -> list[str]:
    value = _env_or_default(name, default, env)
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_pairs_env(name: str, env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parse ``key=value,key=value``; entries without ``=`` are ignored."""
    pairs: dict[str, str] = {}
    for item in _parse_csv_env(name, env=env):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def _parse_int_env(name: str, default: int, env: Mapping[str, str] | None = None) -> int:
    raw = _env_or_default(name, str(default), env)
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from exc


def _parse_float_env(name: str, default: float, env: Mapping[str, str] | None = None) -> float:
    raw = _env_or_default(name, str(default), env)
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got '{raw}'") from exc


@dataclass(frozen=True)
class KernelSettings:
    state_file: str | None = None
    worker_id: str = "kernel-dispatcher"
    max_retries: int = 3
    retry_backoff_seconds: float = 0.0
    retry_overrides: dict[str, int] = field(default_factory=dict)
    stale_claim_seconds: int = 300
    ghl_webhook_secret: str | None = None
    ghl_locations: dict[str, str] = field(default_factory=dict)
    forward_url: str | None = None
    cors_allow_origins: list[str] = field(default_factory=lambda: ["null"])
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> KernelSettings:
        overrides: dict[str, int] = {}
        for task_type, raw in _parse_pairs_env("KERNEL_RETRY_OVERRIDES", env).items():
            try:
                overrides[task_type] = int(raw)
            except ValueError as exc:
                raise ValueError(
                    f"KERNEL_RETRY_OVERRIDES entry for '{task_type}' must be an integer, got '{raw}'"
                ) from exc

        return cls(
            state_file=_env_or_default("KERNEL_STATE_FILE", "", env) or None,
            worker_id=_env_or_default("KERNEL_WORKER_ID", "kernel-dispatcher", env),
            max_retries=_parse_int_env("KERNEL_MAX_RETRIES", 3, env),
            retry_backoff_seconds=_parse_float_env("KERNEL_RETRY_BACKOFF_SECONDS", 0.0, env),
            retry_overrides=overrides,
            stale_claim_seconds=_parse_int_env("KERNEL_STALE_CLAIM_SECONDS", 300, env),
            ghl_webhook_secret=_env_or_default("GHL_WEBHOOK_SECRET", "", env) or None,
            ghl_locations=_parse_pairs_env("KERNEL_GHL_LOCATIONS", env),
            forward_url=_env_or_default("KERNEL_FORWARD_URL", "", env) or None,
            cors_allow_origins=_parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null", env=env),
            cors_allow_origin_regex=_env_or_default(
                "API_CORS_ALLOW_ORIGIN_REGEX",
                r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
                env,
            ),
        )
