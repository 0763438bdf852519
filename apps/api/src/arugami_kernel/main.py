from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Body, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from arugami_kernel.kernel import build_kernel
from arugami_kernel.schemas import (
    ActivityItem,
    ApprovalRequest,
    CancelRequest,
    ChainVerification,
    GhlWebhookResponse,
    KernelHealth,
    KernelMetrics,
    PolicyCreate,
    PolicyRead,
    PolicyUpdate,
    ReceiptAction,
    ReceiptRead,
    RunNextRequest,
    RunOutcome,
    TaskCreate,
    TaskRead,
    TaskStatus,
)
from arugami_kernel.settings import KernelSettings
from arugami_kernel.store import ConflictError, InvalidStateError, NotFoundError, ValidationError

logger = structlog.get_logger()

GHL_TASK_TYPE = "ghl_event"

app = FastAPI(title="arugami kernel", version="0.1.0")
settings = KernelSettings.from_env()
kernel = build_kernel(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_client(client_id: str | None) -> str:
    if client_id is None or not client_id.strip():
        raise HTTPException(status_code=401, detail="missing client identity")
    return client_id.strip()


def _actor(client_id: str, actor: str | None) -> str:
    if actor and actor.strip():
        return actor.strip()
    return f"user:{client_id}"


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/kernel/tasks", response_model=TaskRead)
def create_task(
    payload: TaskCreate,
    x_client_id: str | None = Header(default=None),
    x_actor: str | None = Header(default=None),
) -> TaskRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.create_task(
            client_id,
            payload.task_type,
            payload.payload,
            payload.priority,
            scheduled_for=payload.scheduled_for,
            expires_at=payload.expires_at,
            actor=_actor(client_id, x_actor),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/kernel/tasks", response_model=list[TaskRead])
def list_tasks(
    status: TaskStatus | None = None,
    task_type: str | None = None,
    limit: int = 50,
    x_client_id: str | None = Header(default=None),
) -> list[TaskRead]:
    client_id = _require_client(x_client_id)
    return kernel.get_tasks(client_id, status=status, task_type=task_type, limit=limit)


@app.get("/kernel/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str, x_client_id: str | None = Header(default=None)) -> TaskRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.get_task(task_id, client_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/kernel/tasks/{task_id}/approve", response_model=TaskRead)
def approve_task(
    task_id: str,
    payload: ApprovalRequest | None = None,
    x_client_id: str | None = Header(default=None),
    x_actor: str | None = Header(default=None),
) -> TaskRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.approve_task(
            task_id,
            client_id,
            _actor(client_id, x_actor),
            payload.reason if payload is not None else None,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/kernel/tasks/{task_id}/cancel", response_model=TaskRead)
def cancel_task(
    task_id: str,
    payload: CancelRequest | None = None,
    x_client_id: str | None = Header(default=None),
    x_actor: str | None = Header(default=None),
) -> TaskRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.cancel_task(
            task_id,
            client_id,
            _actor(client_id, x_actor),
            payload.reason if payload is not None else None,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/kernel/run-next", response_model=RunOutcome)
def run_next(
    payload: RunNextRequest | None = None,
    x_client_id: str | None = Header(default=None),
) -> RunOutcome:
    client_id = _require_client(x_client_id)
    task_type = payload.task_type if payload is not None else None
    return kernel.run_next_task(client_id=client_id, task_type=task_type)


@app.post("/kernel/reap-stale-claims", response_model=list[TaskRead])
def reap_stale_claims(x_client_id: str | None = Header(default=None)) -> list[TaskRead]:
    client_id = _require_client(x_client_id)
    return [task for task in kernel.reap_stale_claims() if task.client_id == client_id]


@app.get("/kernel/receipts", response_model=list[ReceiptRead])
def list_receipts(
    limit: int = 50,
    action: ReceiptAction | None = None,
    task_id: str | None = None,
    since: datetime | None = None,
    x_client_id: str | None = Header(default=None),
) -> list[ReceiptRead]:
    client_id = _require_client(x_client_id)
    return kernel.get_receipts(client_id, limit=limit, action=action, task_id=task_id, since=since)


@app.get("/kernel/receipts/verify", response_model=ChainVerification)
def verify_receipts(limit: int = 100, x_client_id: str | None = Header(default=None)) -> ChainVerification:
    client_id = _require_client(x_client_id)
    return kernel.verify_chain(client_id, limit)


@app.get("/kernel/health", response_model=KernelHealth)
def kernel_health(x_client_id: str | None = Header(default=None)) -> KernelHealth:
    client_id = _require_client(x_client_id)
    return kernel.health(client_id)


@app.get("/kernel/metrics", response_model=KernelMetrics)
def kernel_metrics(x_client_id: str | None = Header(default=None)) -> KernelMetrics:
    client_id = _require_client(x_client_id)
    return kernel.metrics(client_id)


@app.get("/kernel/activity", response_model=list[ActivityItem])
def kernel_activity(limit: int = 10, x_client_id: str | None = Header(default=None)) -> list[ActivityItem]:
    client_id = _require_client(x_client_id)
    return kernel.activity(client_id, limit)


@app.post("/kernel/policies", response_model=PolicyRead)
def create_policy(
    payload: PolicyCreate,
    x_client_id: str | None = Header(default=None),
    x_actor: str | None = Header(default=None),
) -> PolicyRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.create_policy(
            client_id,
            payload.task_type,
            payload.effect,
            payload.description,
            _actor(client_id, x_actor),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/kernel/policies", response_model=list[PolicyRead])
def list_policies(
    task_type: str | None = None,
    include_disabled: bool = False,
    x_client_id: str | None = Header(default=None),
) -> list[PolicyRead]:
    client_id = _require_client(x_client_id)
    return kernel.list_policies(client_id, task_type=task_type, enabled_only=not include_disabled)


@app.patch("/kernel/policies/{policy_id}", response_model=PolicyRead)
def update_policy(
    policy_id: str,
    payload: PolicyUpdate,
    x_client_id: str | None = Header(default=None),
    x_actor: str | None = Header(default=None),
) -> PolicyRead:
    client_id = _require_client(x_client_id)
    try:
        return kernel.update_policy(
            policy_id,
            client_id,
            effect=payload.effect,
            description=payload.description,
            enabled=payload.enabled,
            actor=_actor(client_id, x_actor),
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _require_webhook_secret(secret: str | None) -> None:
    expected = settings.ghl_webhook_secret
    if not expected:
        logger.warning("ghl_webhook_secret_not_configured")
        return
    if secret != expected:
        raise HTTPException(status_code=401, detail="invalid webhook secret")


def _first_str(body: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = body.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


@app.post("/webhooks/ghl", response_model=GhlWebhookResponse)
def ghl_webhook(
    body: Any = Body(default=None),
    x_ghl_webhook_secret: str | None = Header(default=None),
) -> GhlWebhookResponse:
    _require_webhook_secret(x_ghl_webhook_secret)
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid JSON body")

    location_id = _first_str(body, "locationId", "location_id")
    if location_id is None:
        raise HTTPException(status_code=400, detail="missing locationId")
    client_id = settings.ghl_locations.get(location_id)
    if client_id is None:
        logger.warning("ghl_webhook_unknown_location", ghl_location_id=location_id)
        raise HTTPException(status_code=404, detail="unknown locationId")

    # Metadata only, contact details stay in the CRM.
    event_payload = {
        "event_type": _first_str(body, "type", "event", "eventType") or "unknown",
        "ghl_location_id": location_id,
        "ghl_contact_id": _first_str(body, "contactId", "contact_id"),
        "received_at": _first_str(body, "dateAdded", "timestamp")
        or datetime.now(timezone.utc).isoformat(),
        "source": "ghl_webhook",
    }

    task_id: str | None = None
    try:
        task = kernel.create_task(client_id, GHL_TASK_TYPE, event_payload, actor="system")
        task_id = task.task_id
        if task.status != TaskStatus.PENDING:
            return GhlWebhookResponse(task_id=task_id, processed=False, status=task.status)

        outcome = kernel.run_next_task(client_id=client_id, task_type=GHL_TASK_TYPE)
        if outcome.idle:
            return GhlWebhookResponse(task_id=task_id, processed=False, error="claim_failed")
        if outcome.task_id != task_id:
            # An older or higher-priority ghl_event task ran first; ours stays queued.
            queued = kernel.get_task(task_id, client_id)
            return GhlWebhookResponse(task_id=task_id, processed=False, status=queued.status)
        return GhlWebhookResponse(
            task_id=task_id,
            processed=outcome.outcome == "completed",
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            error=outcome.error,
        )
    except Exception as exc:  # noqa: BLE001
        # Always acknowledge, otherwise the CRM keeps redelivering.
        logger.error("ghl_webhook_processing_failed", client_id=client_id, error=str(exc))
        return GhlWebhookResponse(task_id=task_id, processed=False, error="processing_failed")
