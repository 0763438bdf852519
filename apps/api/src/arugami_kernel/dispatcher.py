"""Scheduler/dispatcher: intake gate, claim, execute, resolve.

Store and ledger writes happen inside short store transactions; the worker
handler itself always runs with no lock held so a slow worker never blocks
other claims or receipt appends.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any

import pydantic
import structlog

from arugami_kernel.policies import PolicyEngine
from arugami_kernel.receipts import ReceiptLedger, canonical_json
from arugami_kernel.retry_policy import RetryPolicy
from arugami_kernel.schemas import PolicyEffect, ReceiptAction, RunOutcome, TaskRead, TaskStatus
from arugami_kernel.security import redact_sensitive_text
from arugami_kernel.store import ConcurrencyConflict, InMemoryStore, WorkerExecutionError
from arugami_kernel.tasks import TaskStore
from arugami_kernel.workers import WorkerRegistry

logger = structlog.get_logger()

UNKNOWN_TASK_TYPE = "unknown_task_type"
INVALID_PAYLOAD = "invalid_payload"
STALE_CLAIM_RECLAIMED = "stale_claim_reclaimed"


class Dispatcher:
    def __init__(
        self,
        store: InMemoryStore,
        tasks: TaskStore,
        ledger: ReceiptLedger,
        policies: PolicyEngine,
        registry: WorkerRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        worker_id: str = "kernel-dispatcher",
    ) -> None:
        self._store = store
        self._tasks = tasks
        self._ledger = ledger
        self._policies = policies
        self._registry = registry
        self._retry_policy = retry_policy or RetryPolicy()
        self._worker_id = worker_id

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def admit(self, task: TaskRead) -> TaskRead:
        """Run a freshly created task through the policy gate."""
        decision = self._policies.evaluate(task)
        if decision.effect == PolicyEffect.ALLOW:
            return task

        with self._store.transaction():
            if decision.effect == PolicyEffect.REQUIRE_APPROVAL:
                admitted = self._tasks.transition(task, TaskStatus.AWAITING_APPROVAL)
            else:
                admitted = self._tasks.transition(
                    task,
                    TaskStatus.CANCELLED,
                    error=decision.reason,
                    completed_at=self._store.now_iso(),
                )
                self._ledger.append(
                    task.client_id,
                    ReceiptAction.TASK_CANCELLED,
                    "system",
                    {
                        "task_type": task.task_type,
                        "previous_status": task.status.value,
                        "reason": f"denied by policy: {decision.reason}",
                    },
                    task_id=task.task_id,
                    policy_id=decision.policy.policy_id if decision.policy else None,
                )
        logger.info(
            "task_gated",
            client_id=task.client_id,
            task_id=task.task_id,
            decision=decision.effect.value,
        )
        return admitted

    def run_next_task(self, *, client_id: str | None = None, task_type: str | None = None) -> RunOutcome:
        claimed = self._tasks.claim_next(self._worker_id, client_id=client_id, task_type=task_type)
        if claimed is None:
            return RunOutcome(idle=True)
        task, claim_id = claimed

        spec = self._registry.get(task.task_type)
        if spec is None:
            logger.warning(
                "unknown_task_type",
                client_id=task.client_id,
                task_id=task.task_id,
                task_type=task.task_type,
            )
            return self._fail_permanently(task, claim_id, UNKNOWN_TASK_TYPE)

        payload: dict[str, Any] = task.payload
        if spec.payload_model is not None:
            try:
                payload = spec.payload_model.model_validate(task.payload).model_dump()
            except pydantic.ValidationError as exc:
                logger.warning(
                    "invalid_payload",
                    client_id=task.client_id,
                    task_id=task.task_id,
                    errors=exc.error_count(),
                )
                return self._fail_permanently(task, claim_id, INVALID_PAYLOAD)

        started = time.perf_counter()
        result: dict[str, Any] | None = None
        error: str | None = None
        try:
            result = spec.handler(payload)
        except Exception as exc:  # noqa: BLE001
            if not isinstance(exc, WorkerExecutionError):
                exc = WorkerExecutionError(str(exc) or type(exc).__name__)
            error = redact_sensitive_text(str(exc))
        duration_ms = int((time.perf_counter() - started) * 1000)
        if result is not None and not isinstance(result, dict):
            result = {"value": result}
        if error is None:
            try:
                canonical_json(result)
            except (TypeError, ValueError) as exc:
                error = redact_sensitive_text(f"result is not JSON-serialisable: {exc}")
                result = None

        if error is None:
            return self._complete(task, claim_id, result, duration_ms)
        return self._record_failure(task, claim_id, error, duration_ms)

    def reap_stale_claims(self, older_than: timedelta) -> list[TaskRead]:
        """Release tasks whose claim outlived ``older_than``.

        A reaped claim counts as one failed attempt.
        """
        cutoff = self._store.now() - older_than
        reaped: list[TaskRead] = []
        for task, claim_id in self._store.select_stale_claims(cutoff):
            retry_count = task.retry_count + 1
            will_retry = retry_count < self._retry_policy.max_retries_for(task.task_type)
            try:
                with self._store.transaction():
                    resolved = self._resolve_failure(task, claim_id, "claim expired", retry_count, will_retry)
                    self._ledger.append(
                        task.client_id,
                        ReceiptAction.SYSTEM_EVENT,
                        "system",
                        {
                            "reason": STALE_CLAIM_RECLAIMED,
                            "claimed_by": task.claimed_by,
                            "claimed_at": task.claimed_at,
                        },
                        task_id=task.task_id,
                    )
                    self._append_task_failed(task, "claim expired", retry_count, will_retry)
            except ConcurrencyConflict:
                # Resolved by its worker between selection and reap.
                continue
            logger.warning(
                "stale_claim_reclaimed",
                client_id=task.client_id,
                task_id=task.task_id,
                claimed_by=task.claimed_by,
                will_retry=will_retry,
            )
            reaped.append(resolved)
        return reaped

    def _complete(
        self,
        task: TaskRead,
        claim_id: str,
        result: dict[str, Any] | None,
        duration_ms: int,
    ) -> RunOutcome:
        try:
            with self._store.transaction():
                completed = self._tasks.resolve(task, claim_id, TaskStatus.COMPLETED, result=result)
                self._append_worker_executed(task, success=True, duration_ms=duration_ms)
                self._ledger.append(
                    task.client_id,
                    ReceiptAction.TASK_COMPLETED,
                    f"worker:{self._worker_id}",
                    {"task_type": task.task_type, "retry_count": task.retry_count},
                    task_id=task.task_id,
                )
        except ConcurrencyConflict:
            return self._lost_claim(task, duration_ms)
        logger.info("task_completed", client_id=task.client_id, task_id=task.task_id, duration_ms=duration_ms)
        return RunOutcome(
            task_id=task.task_id,
            outcome="completed",
            status=completed.status,
            will_retry=False,
            duration_ms=duration_ms,
        )

    def _record_failure(self, task: TaskRead, claim_id: str, error: str, duration_ms: int) -> RunOutcome:
        retry_count = task.retry_count + 1
        will_retry = retry_count < self._retry_policy.max_retries_for(task.task_type)
        try:
            with self._store.transaction():
                failed = self._resolve_failure(task, claim_id, error, retry_count, will_retry)
                self._append_worker_executed(
                    task,
                    success=False,
                    duration_ms=duration_ms,
                    error=error,
                    will_retry=will_retry,
                )
                self._append_task_failed(task, error, retry_count, will_retry)
        except ConcurrencyConflict:
            return self._lost_claim(task, duration_ms)
        logger.warning(
            "task_failed",
            client_id=task.client_id,
            task_id=task.task_id,
            retry_count=retry_count,
            will_retry=will_retry,
        )
        return RunOutcome(
            task_id=task.task_id,
            outcome="retry_scheduled" if will_retry else "failed",
            status=failed.status,
            will_retry=will_retry,
            duration_ms=duration_ms,
            error=error,
        )

    def _fail_permanently(self, task: TaskRead, claim_id: str, error: str) -> RunOutcome:
        try:
            with self._store.transaction():
                failed = self._tasks.resolve(task, claim_id, TaskStatus.FAILED, error=error)
                self._append_task_failed(task, error, task.retry_count, False)
        except ConcurrencyConflict:
            return self._lost_claim(task, None)
        return RunOutcome(
            task_id=task.task_id,
            outcome="failed",
            status=failed.status,
            will_retry=False,
            error=error,
        )

    def _resolve_failure(
        self,
        task: TaskRead,
        claim_id: str,
        error: str,
        retry_count: int,
        will_retry: bool,
    ) -> TaskRead:
        if will_retry:
            backoff = self._retry_policy.backoff_for(retry_count)
            return self._tasks.resolve(
                task,
                claim_id,
                TaskStatus.PENDING,
                error=error,
                retry_count=retry_count,
                scheduled_for=self._store.now() + backoff if backoff else None,
            )
        return self._tasks.resolve(task, claim_id, TaskStatus.FAILED, error=error, retry_count=retry_count)

    def _append_worker_executed(
        self,
        task: TaskRead,
        *,
        success: bool,
        duration_ms: int,
        error: str | None = None,
        will_retry: bool | None = None,
    ) -> None:
        body: dict[str, Any] = {"task_type": task.task_type, "success": success, "duration_ms": duration_ms}
        if error is not None:
            body["error"] = error
        if will_retry is not None:
            body["will_retry"] = will_retry
        self._ledger.append(
            task.client_id,
            ReceiptAction.WORKER_EXECUTED,
            f"worker:{self._worker_id}",
            body,
            task_id=task.task_id,
        )

    def _append_task_failed(self, task: TaskRead, error: str, retry_count: int, will_retry: bool) -> None:
        self._ledger.append(
            task.client_id,
            ReceiptAction.TASK_FAILED,
            f"worker:{self._worker_id}",
            {
                "task_type": task.task_type,
                "error": error,
                "retry_count": retry_count,
                "will_retry": will_retry,
            },
            task_id=task.task_id,
        )

    def _lost_claim(self, task: TaskRead, duration_ms: int | None) -> RunOutcome:
        logger.warning("claim_lost", client_id=task.client_id, task_id=task.task_id, worker_id=self._worker_id)
        current = self._store.get_task(task.task_id)
        return RunOutcome(
            task_id=task.task_id,
            outcome="lost_claim",
            status=current.status,
            duration_ms=duration_ms,
        )
