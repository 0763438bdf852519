from __future__ import annotations

import structlog

from arugami_kernel.receipts import ReceiptLedger
from arugami_kernel.schemas import ReceiptAction, TaskRead, TaskStatus
from arugami_kernel.store import InMemoryStore, InvalidStateError
from arugami_kernel.tasks import TaskStore

logger = structlog.get_logger()


class ApprovalService:
    def __init__(self, store: InMemoryStore, tasks: TaskStore, ledger: ReceiptLedger) -> None:
        self._store = store
        self._tasks = tasks
        self._ledger = ledger

    def approve_task(
        self,
        task_id: str,
        client_id: str,
        actor: str,
        reason: str | None = None,
    ) -> TaskRead:
        """Release a task held for owner approval back to the dispatch queue.

        Approval resets the retry budget; it never runs the task itself.
        """
        with self._store.transaction():
            task = self._tasks.get_task(task_id, client_id)
            if task.status != TaskStatus.AWAITING_APPROVAL:
                raise InvalidStateError(
                    f'Cannot approve task in "{task.status.value}" state. '
                    "Only tasks awaiting approval can be approved."
                )
            approved = self._tasks.transition(
                task,
                TaskStatus.PENDING,
                retry_count=0,
                claimed_by=None,
                claim_id=None,
                claimed_at=None,
                error=None,
            )
            self._ledger.append(
                client_id,
                ReceiptAction.OWNER_APPROVAL,
                actor,
                {
                    "task_type": task.task_type,
                    "actor": actor,
                    "previous_status": task.status.value,
                    "reason": reason,
                },
                task_id=task_id,
            )
        logger.info("task_approved", client_id=client_id, task_id=task_id, actor=actor)
        return approved
