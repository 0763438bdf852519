from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from arugami_kernel.schemas import PolicyRead, ReceiptRead, TaskRead, TaskStatus


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class InvalidStateError(Exception):
    pass


class ConcurrencyConflict(Exception):
    pass


class ChainIntegrityError(Exception):
    pass


class WorkerExecutionError(Exception):
    pass


@dataclass
class _TaskRecord:
    task_id: str
    client_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    created_at: str
    updated_at: str
    seq: int
    status: str = TaskStatus.PENDING.value
    retry_count: int = 0
    claimed_by: str | None = None
    claim_id: str | None = None
    claimed_at: str | None = None
    scheduled_for: str | None = None
    expires_at: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    completed_at: str | None = None


@dataclass
class _ReceiptRecord:
    receipt_id: str
    client_id: str
    task_id: str | None
    policy_id: str | None
    action: str
    actor: str
    payload: dict[str, Any]
    prev_hash: str
    hash: str
    created_at: str
    seq: int


@dataclass
class _PolicyRecord:
    policy_id: str
    client_id: str
    task_type: str
    effect: str
    description: str | None
    enabled: bool
    created_at: str
    updated_at: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Transactional table store backing the kernel.

    Three tables (tasks, receipts, policies) guarded by one re-entrant lock.
    Every mutation happens under the lock; a ``transaction()`` block groups
    several mutations and writes the snapshot file once when the outermost
    block exits.
    """

    def __init__(
        self,
        state_file: str | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._clock = clock
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._tasks: dict[str, _TaskRecord] = {}
        self._receipts: dict[str, list[_ReceiptRecord]] = {}
        self._policies: dict[str, _PolicyRecord] = {}
        self._task_seq = 1
        self._receipt_seq = 1
        self._load_state()

    def now(self) -> datetime:
        return self._clock()

    def now_iso(self) -> str:
        return self._clock().astimezone(timezone.utc).isoformat(timespec="microseconds")

    @contextmanager
    def transaction(self) -> Iterator[InMemoryStore]:
        with self._lock:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
                if self._depth == 0 and self._dirty:
                    self._dirty = False
                    self._persist_state()

    # -- tasks ---------------------------------------------------------------

    def insert_task(self, record: _TaskRecord) -> TaskRead:
        with self.transaction():
            record.seq = self._task_seq
            self._task_seq += 1
            self._tasks[record.task_id] = record
            self._dirty = True
            return self._to_task_read(record)

    def get_task(self, task_id: str, client_id: str | None = None) -> TaskRead:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None or (client_id is not None and record.client_id != client_id):
                raise NotFoundError(f"task {task_id} not found")
            return self._to_task_read(record)

    def select_tasks(
        self,
        *,
        client_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: str | None = None,
    ) -> list[TaskRead]:
        with self._lock:
            return [
                self._to_task_read(record)
                for record in self._tasks.values()
                if (client_id is None or record.client_id == client_id)
                and (status is None or record.status == status.value)
                and (task_type is None or record.task_type == task_type)
            ]

    def count_tasks(self, *, client_id: str, status: TaskStatus) -> int:
        with self._lock:
            return sum(
                1
                for record in self._tasks.values()
                if record.client_id == client_id and record.status == status.value
            )

    def update_task_if(
        self,
        task_id: str,
        *,
        expected_status: TaskStatus,
        expected_claim_id: str | None = None,
        **changes: Any,
    ) -> TaskRead | None:
        """Conditional update: apply ``changes`` only if the row still matches.

        Returns the updated task, or None when the row moved on in the
        meantime (the caller lost a race).
        """
        with self.transaction():
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            if record.status != expected_status.value:
                return None
            if expected_claim_id is not None and record.claim_id != expected_claim_id:
                return None
            for key, value in changes.items():
                if not hasattr(record, key) or key in ("task_id", "client_id", "seq"):
                    raise ValueError(f"unknown or immutable task column '{key}'")
                setattr(record, key, value.value if isinstance(value, TaskStatus) else value)
            record.updated_at = self.now_iso()
            self._dirty = True
            return self._to_task_read(record)

    def claim_order_candidates(
        self,
        *,
        client_id: str | None = None,
        task_type: str | None = None,
        now: datetime | None = None,
    ) -> list[TaskRead]:
        """Pending, due and unexpired tasks in dispatch order: priority desc, created_at asc."""
        cutoff = now or self.now()
        with self._lock:
            records = [
                record
                for record in self._tasks.values()
                if record.status == TaskStatus.PENDING.value
                and (client_id is None or record.client_id == client_id)
                and (task_type is None or record.task_type == task_type)
                and (
                    record.scheduled_for is None
                    or datetime.fromisoformat(record.scheduled_for) <= cutoff
                )
                and (record.expires_at is None or datetime.fromisoformat(record.expires_at) > cutoff)
            ]
            records.sort(key=lambda record: (-record.priority, record.created_at, record.seq))
            return [self._to_task_read(record) for record in records]

    def select_stale_claims(self, cutoff: datetime) -> list[tuple[TaskRead, str]]:
        """Claimed tasks whose claim is older than ``cutoff``, with their claim ids."""
        with self._lock:
            return [
                (self._to_task_read(record), record.claim_id or "")
                for record in self._tasks.values()
                if record.status == TaskStatus.CLAIMED.value
                and record.claimed_at is not None
                and datetime.fromisoformat(record.claimed_at) < cutoff
            ]

    # -- receipts ------------------------------------------------------------

    def receipt_chain_head(self, client_id: str) -> str | None:
        with self._lock:
            chain = self._receipts.get(client_id)
            if not chain:
                return None
            return chain[-1].hash

    def append_receipt_if_head(self, record: _ReceiptRecord, *, expected_head: str | None) -> ReceiptRead:
        """Atomic compare-and-append on a client's receipt chain.

        Raises ConcurrencyConflict when another writer moved the head since
        ``expected_head`` was read.
        """
        with self.transaction():
            chain = self._receipts.setdefault(record.client_id, [])
            current_head = chain[-1].hash if chain else None
            if current_head != expected_head:
                raise ConcurrencyConflict(
                    f"receipt_chain_head_mismatch for client {record.client_id}"
                )
            record.seq = self._receipt_seq
            self._receipt_seq += 1
            chain.append(record)
            self._dirty = True
            return self._to_receipt_read(record)

    def select_receipts(self, client_id: str) -> list[ReceiptRead]:
        """All receipts of one client in chain order (oldest first)."""
        with self._lock:
            return [self._to_receipt_read(record) for record in self._receipts.get(client_id, [])]

    # -- policies ------------------------------------------------------------

    def insert_policy(self, record: _PolicyRecord) -> PolicyRead:
        with self.transaction():
            for existing in self._policies.values():
                if existing.client_id == record.client_id and existing.task_type == record.task_type:
                    raise ConflictError(
                        f"policy for task_type '{record.task_type}' already exists for client {record.client_id}"
                    )
            self._policies[record.policy_id] = record
            self._dirty = True
            return self._to_policy_read(record)

    def get_policy(self, policy_id: str, client_id: str) -> PolicyRead:
        with self._lock:
            record = self._policies.get(policy_id)
            if record is None or record.client_id != client_id:
                raise NotFoundError(f"policy {policy_id} not found")
            return self._to_policy_read(record)

    def update_policy(self, policy_id: str, client_id: str, **changes: Any) -> PolicyRead:
        with self.transaction():
            record = self._policies.get(policy_id)
            if record is None or record.client_id != client_id:
                raise NotFoundError(f"policy {policy_id} not found")
            for key, value in changes.items():
                setattr(record, key, value)
            record.updated_at = self.now_iso()
            self._dirty = True
            return self._to_policy_read(record)

    def select_policies(self, client_id: str) -> list[PolicyRead]:
        with self._lock:
            return [
                self._to_policy_read(record)
                for record in self._policies.values()
                if record.client_id == client_id
            ]

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._tasks = {
            str(key): _TaskRecord(**value)
            for key, value in data.get("tasks", {}).items()
        }
        self._receipts = {
            str(client_id): [_ReceiptRecord(**value) for value in chain]
            for client_id, chain in data.get("receipts", {}).items()
        }
        self._policies = {
            str(key): _PolicyRecord(**value)
            for key, value in data.get("policies", {}).items()
        }

        sequences = data.get("sequences", {})
        self._task_seq = int(sequences.get("task_seq", 1))
        self._receipt_seq = int(sequences.get("receipt_seq", 1))

    def _snapshot(self) -> dict[str, Any]:
        return {
            "tasks": {key: asdict(value) for key, value in self._tasks.items()},
            "receipts": {
                client_id: [asdict(record) for record in chain]
                for client_id, chain in self._receipts.items()
            },
            "policies": {key: asdict(value) for key, value in self._policies.items()},
            "sequences": {
                "task_seq": self._task_seq,
                "receipt_seq": self._receipt_seq,
            },
        }

    @staticmethod
    def _to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            task_id=record.task_id,
            client_id=record.client_id,
            task_type=record.task_type,
            payload=copy.deepcopy(record.payload),
            priority=record.priority,
            status=record.status,
            retry_count=record.retry_count,
            claimed_by=record.claimed_by,
            claimed_at=record.claimed_at,
            scheduled_for=record.scheduled_for,
            expires_at=record.expires_at,
            result=copy.deepcopy(record.result),
            error=record.error,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
        )

    @staticmethod
    def _to_receipt_read(record: _ReceiptRecord) -> ReceiptRead:
        return ReceiptRead(
            receipt_id=record.receipt_id,
            client_id=record.client_id,
            task_id=record.task_id,
            policy_id=record.policy_id,
            action=record.action,
            actor=record.actor,
            payload=copy.deepcopy(record.payload),
            prev_hash=record.prev_hash,
            hash=record.hash,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_policy_read(record: _PolicyRecord) -> PolicyRead:
        return PolicyRead(
            policy_id=record.policy_id,
            client_id=record.client_id,
            task_type=record.task_type,
            effect=record.effect,
            description=record.description,
            enabled=record.enabled,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
