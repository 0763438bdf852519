from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class TaskStatus(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReceiptAction(str, Enum):
    TASK_CREATED = "task_created"
    POLICY_CHECKED = "policy_checked"
    TASK_CLAIMED = "task_claimed"
    WORKER_EXECUTED = "worker_executed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    OWNER_APPROVAL = "owner_approval"
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    SYSTEM_EVENT = "system_event"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


# Allowed status edges. Anything not listed here is rejected by the task store.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.AWAITING_APPROVAL, TaskStatus.CLAIMED, TaskStatus.CANCELLED}
    ),
    TaskStatus.AWAITING_APPROVAL: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.CLAIMED: frozenset({TaskStatus.COMPLETED, TaskStatus.PENDING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskCreate(BaseModel):
    task_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None


class TaskRead(BaseModel):
    task_id: str
    client_id: str
    task_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    claimed_by: str | None = None
    claimed_at: str | None = None
    scheduled_for: str | None = None
    expires_at: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: str
    updated_at: str
    completed_at: str | None = None


class ReceiptRead(BaseModel):
    receipt_id: str
    client_id: str
    task_id: str | None = None
    policy_id: str | None = None
    action: ReceiptAction
    actor: str
    payload: dict[str, Any] = Field(default_factory=dict)
    prev_hash: str
    hash: str
    created_at: str


class ChainVerification(BaseModel):
    valid: bool
    checked: int
    broken_at: str | None = None


class PolicyCreate(BaseModel):
    task_type: str = Field(min_length=1)
    effect: PolicyEffect
    description: str | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "PolicyCreate":
        self.task_type = self.task_type.strip()
        if not self.task_type:
            raise ValueError("task_type must be a non-empty string")
        return self


class PolicyUpdate(BaseModel):
    effect: PolicyEffect | None = None
    description: str | None = None
    enabled: bool | None = None


class PolicyRead(BaseModel):
    policy_id: str
    client_id: str
    task_type: str
    effect: PolicyEffect
    description: str | None = None
    enabled: bool = True
    created_at: str
    updated_at: str


class PolicyDecision(BaseModel):
    effect: PolicyEffect
    policy: PolicyRead | None = None
    reason: str


class ApprovalRequest(BaseModel):
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class RunNextRequest(BaseModel):
    task_type: str | None = None


class RunOutcome(BaseModel):
    idle: bool = False
    task_id: str | None = None
    outcome: str | None = None
    status: TaskStatus | None = None
    will_retry: bool | None = None
    duration_ms: int | None = None
    error: str | None = None


class KernelHealth(BaseModel):
    healthy: bool
    chain_valid: bool
    chain_checked: int
    chain_broken_at: str | None = None
    pending_tasks: int
    failed_tasks: int


class KernelMetrics(BaseModel):
    contacts_this_week: int
    contacts_total: int
    opportunities_this_week: int
    open_items: int
    # The kernel does not track monetary values.
    total_pipeline_value: float = 0.0


class ActivityItem(BaseModel):
    receipt_id: str
    action: ReceiptAction
    task_id: str | None = None
    title: str
    subtitle: str
    created_at: str


class GhlWebhookResponse(BaseModel):
    received: bool = True
    task_id: str | None = None
    processed: bool = False
    status: TaskStatus | None = None
    duration_ms: int | None = None
    error: str | None = None


class ForwardResult(BaseModel):
    delivered: bool
    target_url: str | None = None
    status_code: int | None = None
    message: str


class GhlEventPayload(BaseModel):
    event_type: str = Field(min_length=1)
    ghl_location_id: str | None = None
    ghl_contact_id: str | None = None
    received_at: str | None = None
    source: str = "ghl_webhook"
