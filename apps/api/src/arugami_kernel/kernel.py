from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from arugami_kernel import health
from arugami_kernel.approvals import ApprovalService
from arugami_kernel.dispatcher import Dispatcher
from arugami_kernel.policies import PolicyEngine
from arugami_kernel.receipts import ReceiptLedger
from arugami_kernel.retry_policy import RetryPolicy
from arugami_kernel.schemas import (
    ActivityItem,
    ChainVerification,
    KernelHealth,
    KernelMetrics,
    PolicyEffect,
    PolicyRead,
    ReceiptAction,
    ReceiptRead,
    RunOutcome,
    TaskRead,
    TaskStatus,
)
from arugami_kernel.settings import KernelSettings
from arugami_kernel.store import InMemoryStore, utc_now
from arugami_kernel.tasks import TaskStore
from arugami_kernel.workers import WorkerRegistry, build_default_registry


class Kernel:
    """Public operations of the task kernel, one object per process."""

    def __init__(
        self,
        store: InMemoryStore,
        registry: WorkerRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        worker_id: str = "kernel-dispatcher",
        stale_claim_after: timedelta = timedelta(minutes=5),
    ) -> None:
        self.store = store
        self.ledger = ReceiptLedger(store)
        self.tasks = TaskStore(store, self.ledger)
        self.policies = PolicyEngine(store, self.ledger)
        self.approvals = ApprovalService(store, self.tasks, self.ledger)
        self.dispatcher = Dispatcher(
            store,
            self.tasks,
            self.ledger,
            self.policies,
            registry,
            retry_policy=retry_policy,
            worker_id=worker_id,
        )
        self.registry = registry
        self.stale_claim_after = stale_claim_after

    # -- tasks ---------------------------------------------------------------

    def create_task(
        self,
        client_id: str,
        task_type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        *,
        scheduled_for: datetime | None = None,
        expires_at: datetime | None = None,
        actor: str = "system",
    ) -> TaskRead:
        # Insert and gate under one lock hold: no dispatcher may see the
        # task as pending before its policy decision is applied.
        with self.store.transaction():
            task = self.tasks.create_task(
                client_id,
                task_type,
                payload,
                priority,
                scheduled_for=scheduled_for,
                expires_at=expires_at,
                actor=actor,
            )
            return self.dispatcher.admit(task)

    def get_task(self, task_id: str, client_id: str) -> TaskRead:
        return self.tasks.get_task(task_id, client_id)

    def get_tasks(
        self,
        client_id: str,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[TaskRead]:
        return self.tasks.get_tasks(client_id, status=status, task_type=task_type, limit=limit)

    def count_pending_tasks(self, client_id: str) -> int:
        return self.tasks.count_pending(client_id)

    def count_tasks(self, client_id: str, status: TaskStatus) -> int:
        return self.tasks.count_by_status(client_id, status)

    def cancel_task(self, task_id: str, client_id: str, actor: str, reason: str | None = None) -> TaskRead:
        return self.tasks.cancel_task(task_id, client_id, actor, reason)

    def approve_task(self, task_id: str, client_id: str, actor: str, reason: str | None = None) -> TaskRead:
        return self.approvals.approve_task(task_id, client_id, actor, reason)

    def run_next_task(self, *, client_id: str | None = None, task_type: str | None = None) -> RunOutcome:
        return self.dispatcher.run_next_task(client_id=client_id, task_type=task_type)

    def reap_stale_claims(self, older_than: timedelta | None = None) -> list[TaskRead]:
        return self.dispatcher.reap_stale_claims(older_than or self.stale_claim_after)

    # -- receipts ------------------------------------------------------------

    def get_receipts(
        self,
        client_id: str,
        *,
        limit: int = 50,
        action: ReceiptAction | None = None,
        task_id: str | None = None,
        since: datetime | str | None = None,
    ) -> list[ReceiptRead]:
        return self.ledger.get_receipts(client_id, limit=limit, action=action, task_id=task_id, since=since)

    def verify_chain(self, client_id: str, limit: int = 100) -> ChainVerification:
        return self.ledger.verify_chain(client_id, limit)

    # -- policies ------------------------------------------------------------

    def create_policy(
        self,
        client_id: str,
        task_type: str,
        effect: PolicyEffect,
        description: str | None = None,
        actor: str = "system",
    ) -> PolicyRead:
        return self.policies.create_policy(client_id, task_type, effect, description, actor)

    def update_policy(
        self,
        policy_id: str,
        client_id: str,
        *,
        effect: PolicyEffect | None = None,
        description: str | None = None,
        enabled: bool | None = None,
        actor: str = "system",
    ) -> PolicyRead:
        return self.policies.update_policy(
            policy_id,
            client_id,
            effect=effect,
            description=description,
            enabled=enabled,
            actor=actor,
        )

    def list_policies(
        self,
        client_id: str,
        *,
        task_type: str | None = None,
        enabled_only: bool = True,
    ) -> list[PolicyRead]:
        return self.policies.list_policies(client_id, task_type=task_type, enabled_only=enabled_only)

    # -- read models ---------------------------------------------------------

    def health(self, client_id: str) -> KernelHealth:
        return health.get_kernel_health(self, client_id)

    def activity(self, client_id: str, limit: int = 10) -> list[ActivityItem]:
        return health.get_kernel_activity(self, client_id, limit)

    def metrics(self, client_id: str) -> KernelMetrics:
        return health.get_kernel_metrics(self, client_id)


def build_kernel(
    settings: KernelSettings,
    *,
    registry: WorkerRegistry | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Kernel:
    store = InMemoryStore(state_file=settings.state_file, clock=clock)
    return Kernel(
        store,
        registry if registry is not None else build_default_registry(settings),
        retry_policy=RetryPolicy(
            max_retries=settings.max_retries,
            backoff_seconds=settings.retry_backoff_seconds,
            overrides=dict(settings.retry_overrides),
        ),
        worker_id=settings.worker_id,
        stale_claim_after=timedelta(seconds=settings.stale_claim_seconds),
    )
