"""Worker registry.

A worker is a plain callable taking the task payload and returning a result
object (or None). Raising signals failure; the dispatcher decides whether the
task is retried. The registry is built once at startup and handed to the
dispatcher, it is never mutated afterwards.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import structlog
from pydantic import BaseModel

from arugami_kernel.forward_client import forward_payload
from arugami_kernel.schemas import GhlEventPayload
from arugami_kernel.settings import KernelSettings
from arugami_kernel.store import WorkerExecutionError

logger = structlog.get_logger()

WorkerHandler = Callable[[dict[str, Any]], "dict[str, Any] | None"]


@dataclass(frozen=True)
class WorkerSpec:
    handler: WorkerHandler
    payload_model: type[BaseModel] | None = None


class WorkerRegistry(Mapping[str, WorkerSpec]):
    def __init__(self, workers: Mapping[str, WorkerSpec | WorkerHandler]) -> None:
        specs: dict[str, WorkerSpec] = {}
        for task_type, worker in workers.items():
            if not task_type or not task_type.strip():
                raise ValueError("worker task_type must be a non-empty string")
            specs[task_type] = worker if isinstance(worker, WorkerSpec) else WorkerSpec(handler=worker)
        self._workers = MappingProxyType(specs)

    def __getitem__(self, task_type: str) -> WorkerSpec:
        return self._workers[task_type]

    def __iter__(self) -> Iterator[str]:
        return iter(self._workers)

    def __len__(self) -> int:
        return len(self._workers)

    def task_types(self) -> list[str]:
        return sorted(self._workers)


def echo_worker(payload: dict[str, Any]) -> dict[str, Any]:
    return {"echo": payload}


def ghl_event_worker(payload: dict[str, Any]) -> dict[str, Any]:
    # Acknowledge only; contact data stays in the CRM.
    logger.info(
        "ghl_event_processed",
        event_type=payload.get("event_type"),
        ghl_location_id=payload.get("ghl_location_id"),
    )
    return {
        "acknowledged": True,
        "event_type": payload.get("event_type"),
        "ghl_location_id": payload.get("ghl_location_id"),
    }


def make_webhook_forward_worker(target_url: str) -> WorkerHandler:
    def webhook_forward_worker(payload: dict[str, Any]) -> dict[str, Any]:
        result = forward_payload(target_url, payload)
        if not result.delivered:
            raise WorkerExecutionError(result.message)
        return {"delivered": True, "status_code": result.status_code}

    return webhook_forward_worker


def build_default_registry(settings: KernelSettings) -> WorkerRegistry:
    workers: dict[str, WorkerSpec] = {
        "echo": WorkerSpec(handler=echo_worker),
        "ghl_event": WorkerSpec(handler=ghl_event_worker, payload_model=GhlEventPayload),
    }
    if settings.forward_url:
        workers["webhook_forward"] = WorkerSpec(handler=make_webhook_forward_worker(settings.forward_url))
    return WorkerRegistry(workers)
