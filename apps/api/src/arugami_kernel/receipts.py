"""Append-only, hash-chained receipt ledger.

Each client owns one chain. A receipt's hash covers the previous receipt's
hash plus its own action, actor, payload, task id and timestamp, so editing
any stored receipt after the fact breaks verification from that point on.
"""

from __future__ import annotations

import copy
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from arugami_kernel.schemas import ChainVerification, ReceiptAction, ReceiptRead
from arugami_kernel.security import redact_payload
from arugami_kernel.store import ConcurrencyConflict, InMemoryStore, ValidationError, _ReceiptRecord

logger = structlog.get_logger()

GENESIS_HASH = "0" * 64
MAX_APPEND_ATTEMPTS = 5
MAX_RECEIPT_LIMIT = 200


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def normalize_timestamp(value: str) -> str:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def compute_receipt_hash(
    prev_hash: str,
    action: str,
    actor: str,
    payload: dict[str, Any],
    task_id: str | None,
    created_at: str,
) -> str:
    data = canonical_json(
        {
            "prev_hash": prev_hash,
            "action": action,
            "actor": actor,
            "payload": payload,
            "task_id": task_id,
            "timestamp": normalize_timestamp(created_at),
        }
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def verify_receipt_hash(receipt: ReceiptRead) -> bool:
    expected = compute_receipt_hash(
        receipt.prev_hash,
        receipt.action.value,
        receipt.actor,
        receipt.payload,
        receipt.task_id,
        receipt.created_at,
    )
    return receipt.hash == expected


class ReceiptLedger:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def append(
        self,
        client_id: str,
        action: ReceiptAction,
        actor: str,
        payload: dict[str, Any] | None = None,
        *,
        task_id: str | None = None,
        policy_id: str | None = None,
    ) -> ReceiptRead:
        """Append a receipt to the client's chain.

        The head is read, the hash computed, and the insert only lands if
        the head has not moved. A moved head means another writer got in
        first; the sequence is retried against the new head.
        """
        if not client_id:
            raise ValidationError("client_id is required")
        if not actor:
            raise ValidationError("actor is required")
        body = redact_payload(copy.deepcopy(payload or {}))
        action = ReceiptAction(action)

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            head = self._store.receipt_chain_head(client_id)
            prev_hash = head or GENESIS_HASH
            created_at = self._store.now_iso()
            record = _ReceiptRecord(
                receipt_id=str(uuid.uuid4()),
                client_id=client_id,
                task_id=task_id,
                policy_id=policy_id,
                action=action.value,
                actor=actor,
                payload=body,
                prev_hash=prev_hash,
                hash=compute_receipt_hash(prev_hash, action.value, actor, body, task_id, created_at),
                created_at=created_at,
                seq=0,
            )
            try:
                return self._store.append_receipt_if_head(record, expected_head=head)
            except ConcurrencyConflict:
                logger.debug(
                    "receipt_chain_head_moved",
                    client_id=client_id,
                    action=action.value,
                    attempt=attempt,
                )

        raise ConcurrencyConflict(
            f"failed to append {action.value} receipt for client {client_id}: exceeded retry attempts"
        )

    def get_receipts(
        self,
        client_id: str,
        *,
        limit: int = 50,
        action: ReceiptAction | None = None,
        task_id: str | None = None,
        since: datetime | str | None = None,
    ) -> list[ReceiptRead]:
        if limit <= 0:
            return []
        limit = min(limit, MAX_RECEIPT_LIMIT)
        since_ts = normalize_timestamp(since.isoformat() if isinstance(since, datetime) else since) if since else None

        filtered = [
            receipt
            for receipt in reversed(self._store.select_receipts(client_id))
            if (action is None or receipt.action == action)
            and (task_id is None or receipt.task_id == task_id)
            and (since_ts is None or normalize_timestamp(receipt.created_at) >= since_ts)
        ]
        return filtered[:limit]

    def latest(self, client_id: str) -> ReceiptRead | None:
        chain = self._store.select_receipts(client_id)
        return chain[-1] if chain else None

    def verify_chain(self, client_id: str, limit: int = 100) -> ChainVerification:
        """Re-walk the ``limit`` most recent receipts, oldest to newest.

        Each receipt's hash is recomputed from its stored fields and stored
        prev_hash, and the prev_hash must equal the stored hash of the
        receipt before it. ``checked`` is the number of receipts that passed
        before the first mismatch.
        """
        if limit <= 0:
            return ChainVerification(valid=True, checked=0)

        chain = self._store.select_receipts(client_id)
        window = chain[-limit:]
        if len(chain) == len(window):
            previous_hash: str | None = GENESIS_HASH
        else:
            previous_hash = None

        for index, receipt in enumerate(window):
            linked = previous_hash is None or receipt.prev_hash == previous_hash
            if not linked or not verify_receipt_hash(receipt):
                logger.warning(
                    "chain_mismatch",
                    client_id=client_id,
                    receipt_id=receipt.receipt_id,
                    position=index,
                    reason="prev_hash_mismatch" if not linked else "hash_mismatch",
                )
                return ChainVerification(valid=False, checked=index, broken_at=receipt.receipt_id)
            previous_hash = receipt.hash

        return ChainVerification(valid=True, checked=len(window))
