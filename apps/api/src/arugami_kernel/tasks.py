from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from arugami_kernel.receipts import ReceiptLedger, canonical_json
from arugami_kernel.schemas import (
    TASK_TRANSITIONS,
    TERMINAL_TASK_STATUSES,
    ReceiptAction,
    TaskRead,
    TaskStatus,
)
from arugami_kernel.store import (
    ConcurrencyConflict,
    InMemoryStore,
    InvalidStateError,
    ValidationError,
    _TaskRecord,
)

logger = structlog.get_logger()

MIN_PRIORITY = 0
MAX_PRIORITY = 10
MAX_TASK_LIMIT = 100
MAX_CLAIM_ATTEMPTS = 10


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidStateError(f"illegal task transition {current.value} -> {target.value}")


class TaskStore:
    def __init__(self, store: InMemoryStore, ledger: ReceiptLedger) -> None:
        self._store = store
        self._ledger = ledger

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
        if not isinstance(client_id, str) or not client_id.strip():
            raise ValidationError("client_id is required")
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValidationError("task_type is required and must be a non-empty string")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")
        try:
            canonical_json(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"payload must be JSON-serialisable: {exc}") from exc
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer")
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
        scheduled_iso = _to_iso(scheduled_for)
        expires_iso = _to_iso(expires_at)
        if scheduled_iso is not None and expires_iso is not None and expires_iso <= scheduled_iso:
            raise ValidationError("expires_at must be later than scheduled_for")

        task_type = task_type.strip()
        now = self._store.now_iso()
        record = _TaskRecord(
            task_id=str(uuid.uuid4()),
            client_id=client_id,
            task_type=task_type,
            payload=copy.deepcopy(payload),
            priority=priority,
            created_at=now,
            updated_at=now,
            seq=0,
            scheduled_for=scheduled_iso,
            expires_at=expires_iso,
        )
        with self._store.transaction():
            task = self._store.insert_task(record)
            self._ledger.append(
                client_id,
                ReceiptAction.TASK_CREATED,
                actor,
                {"task_type": task_type, "priority": priority},
                task_id=task.task_id,
            )
        logger.info("task_created", client_id=client_id, task_id=task.task_id, task_type=task_type)
        return task

    def get_task(self, task_id: str, client_id: str) -> TaskRead:
        return self._store.get_task(task_id, client_id)

    def get_tasks(
        self,
        client_id: str,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[TaskRead]:
        if limit <= 0:
            return []
        limit = min(limit, MAX_TASK_LIMIT)
        tasks = list(reversed(self._store.select_tasks(client_id=client_id, status=status, task_type=task_type)))
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks[:limit]

    def count_pending(self, client_id: str) -> int:
        return self.count_by_status(client_id, TaskStatus.PENDING)

    def count_by_status(self, client_id: str, status: TaskStatus) -> int:
        return self._store.count_tasks(client_id=client_id, status=status)

    def transition(
        self,
        task: TaskRead,
        target: TaskStatus,
        *,
        expected_claim_id: str | None = None,
        **changes: Any,
    ) -> TaskRead:
        """Move ``task`` from its observed status to ``target``.

        The update is conditional on the row still being in the observed
        status (and, for claimed tasks, still holding ``expected_claim_id``);
        otherwise ConcurrencyConflict is raised.
        """
        check_transition(task.status, target)
        updated = self._store.update_task_if(
            task.task_id,
            expected_status=task.status,
            expected_claim_id=expected_claim_id,
            status=target,
            **changes,
        )
        if updated is None:
            raise ConcurrencyConflict(
                f"task {task.task_id} changed while moving {task.status.value} -> {target.value}"
            )
        return updated

    def claim_next(
        self,
        worker_id: str,
        *,
        client_id: str | None = None,
        task_type: str | None = None,
    ) -> tuple[TaskRead, str] | None:
        """Claim the next eligible pending task.

        Returns the claimed task together with its claim id, or None when
        nothing is eligible. Losing a claim race re-runs selection.
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            candidates = self._store.claim_order_candidates(client_id=client_id, task_type=task_type)
            if not candidates:
                return None
            candidate = candidates[0]
            claim_id = str(uuid.uuid4())
            try:
                with self._store.transaction():
                    claimed = self.transition(
                        candidate,
                        TaskStatus.CLAIMED,
                        claimed_by=worker_id,
                        claim_id=claim_id,
                        claimed_at=self._store.now_iso(),
                    )
                    self._ledger.append(
                        claimed.client_id,
                        ReceiptAction.TASK_CLAIMED,
                        f"worker:{worker_id}",
                        {"task_type": claimed.task_type, "retry_count": claimed.retry_count},
                        task_id=claimed.task_id,
                    )
            except ConcurrencyConflict:
                logger.debug("claim_race_lost", task_id=candidate.task_id, worker_id=worker_id)
                continue
            logger.info(
                "task_claimed",
                client_id=claimed.client_id,
                task_id=claimed.task_id,
                worker_id=worker_id,
            )
            return claimed, claim_id
        return None

    def resolve(
        self,
        task: TaskRead,
        claim_id: str,
        target: TaskStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        retry_count: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> TaskRead:
        """Resolve a claimed task into completed, pending (retry) or failed."""
        if task.status != TaskStatus.CLAIMED:
            raise InvalidStateError(f"task {task.task_id} is not claimed")
        changes: dict[str, Any] = {"error": error}
        if retry_count is not None:
            changes["retry_count"] = retry_count
        if target in TERMINAL_TASK_STATUSES:
            changes["completed_at"] = self._store.now_iso()
        else:
            changes.update(
                claimed_by=None,
                claim_id=None,
                claimed_at=None,
                scheduled_for=_to_iso(scheduled_for),
            )
        if target == TaskStatus.COMPLETED:
            changes["result"] = copy.deepcopy(result) if result is not None else {}
        return self.transition(task, target, expected_claim_id=claim_id, **changes)

    def cancel_task(self, task_id: str, client_id: str, actor: str, reason: str | None = None) -> TaskRead:
        task = self._store.get_task(task_id, client_id)
        if task.status not in (TaskStatus.PENDING, TaskStatus.AWAITING_APPROVAL):
            raise InvalidStateError(
                f'Cannot cancel task in "{task.status.value}" state. '
                "Only pending or awaiting_approval tasks can be cancelled."
            )
        with self._store.transaction():
            cancelled = self.transition(task, TaskStatus.CANCELLED, completed_at=self._store.now_iso())
            self._ledger.append(
                client_id,
                ReceiptAction.TASK_CANCELLED,
                actor,
                {
                    "task_type": task.task_type,
                    "previous_status": task.status.value,
                    "reason": reason or "cancelled by owner",
                },
                task_id=task_id,
            )
        logger.info("task_cancelled", client_id=client_id, task_id=task_id, actor=actor)
        return cancelled


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

