from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from arugami_kernel.schemas import (
    ActivityItem,
    KernelHealth,
    KernelMetrics,
    ReceiptAction,
    ReceiptRead,
    TaskStatus,
)
from arugami_kernel.store import ChainIntegrityError

if TYPE_CHECKING:
    from arugami_kernel.kernel import Kernel

logger = structlog.get_logger()

HEALTH_CHAIN_WINDOW = 50
ACTIVITY_SCAN_LIMIT = 200
METRICS_WINDOW = timedelta(days=7)
GHL_EVENT_TASK_TYPE = "ghl_event"
CONTACT_EVENT = "ContactCreate"
OPPORTUNITY_EVENTS = frozenset({"OpportunityCreate", "OpportunityUpdate", "AppointmentBooked"})

_HIDDEN_ACTIONS = frozenset({ReceiptAction.POLICY_CHECKED, ReceiptAction.TASK_CLAIMED})

_ACTION_TITLES = {
    ReceiptAction.TASK_CREATED: "Task received",
    ReceiptAction.WORKER_EXECUTED: "Worker ran",
    ReceiptAction.TASK_COMPLETED: "Task completed",
    ReceiptAction.TASK_FAILED: "Task failed",
    ReceiptAction.TASK_CANCELLED: "Task cancelled",
    ReceiptAction.OWNER_APPROVAL: "Approved by owner",
    ReceiptAction.POLICY_CREATED: "Policy created",
    ReceiptAction.POLICY_UPDATED: "Policy updated",
    ReceiptAction.SYSTEM_EVENT: "System event",
}


def get_kernel_health(kernel: Kernel, client_id: str) -> KernelHealth:
    verification = kernel.verify_chain(client_id, HEALTH_CHAIN_WINDOW)
    if not verification.valid:
        error = ChainIntegrityError(
            f"receipt chain broken at {verification.broken_at} after {verification.checked} receipts"
        )
        logger.error("chain_integrity_error", client_id=client_id, error=str(error))

    pending = kernel.count_pending_tasks(client_id)
    failed = kernel.count_tasks(client_id, TaskStatus.FAILED)
    return KernelHealth(
        healthy=verification.valid and failed == 0,
        chain_valid=verification.valid,
        chain_checked=verification.checked,
        chain_broken_at=verification.broken_at,
        pending_tasks=pending,
        failed_tasks=failed,
    )


def get_kernel_activity(kernel: Kernel, client_id: str, limit: int = 10) -> list[ActivityItem]:
    """Latest owner-visible event per task, most recent first."""
    if limit <= 0:
        return []

    items: list[ActivityItem] = []
    seen_tasks: set[str] = set()
    for receipt in kernel.get_receipts(client_id, limit=ACTIVITY_SCAN_LIMIT):
        if receipt.action in _HIDDEN_ACTIONS:
            continue
        if receipt.task_id is not None:
            if receipt.task_id in seen_tasks:
                continue
            seen_tasks.add(receipt.task_id)
        items.append(
            ActivityItem(
                receipt_id=receipt.receipt_id,
                action=receipt.action,
                task_id=receipt.task_id,
                title=_ACTION_TITLES.get(receipt.action, receipt.action.value),
                subtitle=_subtitle(receipt),
                created_at=receipt.created_at,
            )
        )
        if len(items) >= limit:
            break
    return items


def get_kernel_metrics(kernel: Kernel, client_id: str) -> KernelMetrics:
    """Dashboard counters derived from ``ghl_event`` tasks."""
    week_start = kernel.store.now() - METRICS_WINDOW
    contacts_total = contacts_week = opportunities_week = 0
    for task in kernel.store.select_tasks(client_id=client_id, task_type=GHL_EVENT_TASK_TYPE):
        event_type = task.payload.get("event_type")
        this_week = datetime.fromisoformat(task.created_at) >= week_start
        if event_type == CONTACT_EVENT:
            contacts_total += 1
            contacts_week += int(this_week)
        elif event_type in OPPORTUNITY_EVENTS:
            opportunities_week += int(this_week)
    return KernelMetrics(
        contacts_this_week=contacts_week,
        contacts_total=contacts_total,
        opportunities_this_week=opportunities_week,
        open_items=kernel.count_pending_tasks(client_id),
    )


def _subtitle(receipt: ReceiptRead) -> str:
    payload = receipt.payload
    task_type = payload.get("task_type")
    if receipt.action == ReceiptAction.TASK_FAILED:
        suffix = "will retry" if payload.get("will_retry") else "no retries left"
        return f"{task_type}: {payload.get('error')} ({suffix})"
    if receipt.action == ReceiptAction.WORKER_EXECUTED:
        return f"{task_type} in {payload.get('duration_ms')} ms"
    if receipt.action in (ReceiptAction.TASK_CANCELLED, ReceiptAction.SYSTEM_EVENT):
        return str(payload.get("reason") or task_type or "")
    if receipt.action == ReceiptAction.OWNER_APPROVAL:
        return f"{task_type} approved by {receipt.actor}"
    if receipt.action in (ReceiptAction.POLICY_CREATED, ReceiptAction.POLICY_UPDATED):
        return f"{task_type} -> {payload.get('effect')}"
    return str(task_type or receipt.actor)
