from datetime import datetime, timedelta, timezone

import pytest

from arugami_kernel.receipts import (
    GENESIS_HASH,
    ReceiptLedger,
    canonical_json,
    compute_receipt_hash,
)
from arugami_kernel.schemas import ReceiptAction
from arugami_kernel.store import ConcurrencyConflict, InMemoryStore, ValidationError, _ReceiptRecord


def _ledger() -> tuple[InMemoryStore, ReceiptLedger]:
    store = InMemoryStore()
    return store, ReceiptLedger(store)


def _fill(ledger: ReceiptLedger, client_id: str, count: int) -> None:
    for index in range(count):
        ledger.append(client_id, ReceiptAction.SYSTEM_EVENT, "system", {"n": index})


def test_canonical_json_sorts_keys_recursively() -> None:
    assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": None}}) == '{"a":{"c":null,"d":[1,2]},"b":1}'


def test_canonical_json_rejects_nan() -> None:
    with pytest.raises(ValueError):
        canonical_json({"value": float("nan")})


def test_hash_ignores_key_order_and_timestamp_format() -> None:
    first = compute_receipt_hash(
        GENESIS_HASH,
        "task_created",
        "system",
        {"a": 1, "b": 2},
        "t1",
        "2026-03-01T12:00:00+00:00",
    )
    second = compute_receipt_hash(
        GENESIS_HASH,
        "task_created",
        "system",
        {"b": 2, "a": 1},
        "t1",
        "2026-03-01T14:00:00.000000+02:00",
    )

    assert first == second
    assert len(first) == 64


def test_first_receipt_links_to_genesis() -> None:
    _, ledger = _ledger()

    first = ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system", {"n": 1})
    second = ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system", {"n": 2})

    assert first.prev_hash == GENESIS_HASH
    assert second.prev_hash == first.hash
    assert first.hash != second.hash


def test_chains_are_independent_per_client() -> None:
    _, ledger = _ledger()

    first = ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system")
    other = ledger.append("c2", ReceiptAction.SYSTEM_EVENT, "system")

    assert first.prev_hash == GENESIS_HASH
    assert other.prev_hash == GENESIS_HASH
    assert ledger.get_receipts("c2") == [other]


def test_append_requires_client_and_actor() -> None:
    _, ledger = _ledger()

    with pytest.raises(ValidationError):
        ledger.append("", ReceiptAction.SYSTEM_EVENT, "system")
    with pytest.raises(ValidationError):
        ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "")


def test_append_redacts_sensitive_payload_fields() -> None:
    _, ledger = _ledger()

    receipt = ledger.append(
        "c1",
        ReceiptAction.SYSTEM_EVENT,
        "system",
        {"email": "owner@example.com", "api_key": "abc", "note": "token=xyz", "kept": "ok"},
    )

    assert receipt.payload["email"] == "[REDACTED]"
    assert receipt.payload["api_key"] == "[REDACTED]"
    assert receipt.payload["note"] == "token=[REDACTED]"
    assert receipt.payload["kept"] == "ok"
    assert ledger.verify_chain("c1").valid is True


def test_append_retries_when_head_moves() -> None:
    store, ledger = _ledger()
    ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system", {"n": 0})
    original = store.append_receipt_if_head
    calls = {"count": 0}

    def racing_append(record, *, expected_head):  # noqa: ANN001
        calls["count"] += 1
        if calls["count"] == 1:
            # Another writer lands between head read and insert.
            original(
                _interloper(store, record),
                expected_head=expected_head,
            )
        return original(record, expected_head=expected_head)

    store.append_receipt_if_head = racing_append  # type: ignore[method-assign]

    receipt = ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system", {"n": 1})

    assert calls["count"] == 2
    assert receipt.payload == {"n": 1}
    assert len(ledger.get_receipts("c1")) == 3
    assert ledger.verify_chain("c1").valid is True


def _interloper(store: InMemoryStore, record: _ReceiptRecord) -> _ReceiptRecord:
    created_at = store.now_iso()
    return _ReceiptRecord(
        receipt_id="interloper",
        client_id=record.client_id,
        task_id=None,
        policy_id=None,
        action=ReceiptAction.SYSTEM_EVENT.value,
        actor="system",
        payload={"interloper": True},
        prev_hash=record.prev_hash,
        hash=compute_receipt_hash(record.prev_hash, "system_event", "system", {"interloper": True}, None, created_at),
        created_at=created_at,
        seq=0,
    )


def test_append_gives_up_after_repeated_conflicts() -> None:
    store, ledger = _ledger()

    def always_conflict(record, *, expected_head):  # noqa: ANN001, ARG001
        raise ConcurrencyConflict("receipt_chain_head_mismatch")

    store.append_receipt_if_head = always_conflict  # type: ignore[method-assign]

    with pytest.raises(ConcurrencyConflict):
        ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system")


def test_get_receipts_newest_first_with_filters() -> None:
    _, ledger = _ledger()
    ledger.append("c1", ReceiptAction.TASK_CREATED, "system", task_id="t1")
    ledger.append("c1", ReceiptAction.TASK_CREATED, "system", task_id="t2")
    ledger.append("c1", ReceiptAction.TASK_CLAIMED, "worker:w1", task_id="t1")

    newest = ledger.get_receipts("c1")
    created = ledger.get_receipts("c1", action=ReceiptAction.TASK_CREATED)
    for_t1 = ledger.get_receipts("c1", task_id="t1")

    assert [receipt.action for receipt in newest] == [
        ReceiptAction.TASK_CLAIMED,
        ReceiptAction.TASK_CREATED,
        ReceiptAction.TASK_CREATED,
    ]
    assert [receipt.task_id for receipt in created] == ["t2", "t1"]
    assert [receipt.action for receipt in for_t1] == [ReceiptAction.TASK_CLAIMED, ReceiptAction.TASK_CREATED]
    assert ledger.get_receipts("c1", limit=0) == []


def test_get_receipts_since_and_limit_cap() -> None:
    current = {"value": datetime(2026, 3, 1, tzinfo=timezone.utc)}
    store = InMemoryStore(clock=lambda: current["value"])
    ledger = ReceiptLedger(store)
    for _ in range(210):
        ledger.append("c1", ReceiptAction.SYSTEM_EVENT, "system")
        current["value"] += timedelta(seconds=1)

    assert len(ledger.get_receipts("c1", limit=1000)) == 200
    recent = ledger.get_receipts("c1", since=datetime(2026, 3, 1, 0, 3, 20, tzinfo=timezone.utc))
    assert len(recent) == 10


def test_verify_chain_valid_for_untouched_ledger() -> None:
    _, ledger = _ledger()
    _fill(ledger, "c1", 12)

    result = ledger.verify_chain("c1", 100)

    assert result.valid is True
    assert result.checked == 12
    assert result.broken_at is None


def test_verify_chain_empty_ledger_is_valid() -> None:
    _, ledger = _ledger()

    result = ledger.verify_chain("nobody")

    assert result.valid is True
    assert result.checked == 0


def test_verify_chain_detects_payload_tampering_at_position() -> None:
    store, ledger = _ledger()
    _fill(ledger, "c1", 8)

    store._receipts["c1"][5].payload = {"n": 999}
    result = ledger.verify_chain("c1", 100)

    assert result.valid is False
    assert result.checked == 5
    assert result.broken_at == store._receipts["c1"][5].receipt_id


def test_verify_chain_detects_hash_tampering_at_position() -> None:
    store, ledger = _ledger()
    _fill(ledger, "c1", 6)

    store._receipts["c1"][2].hash = "f" * 64
    result = ledger.verify_chain("c1", 100)

    assert result.valid is False
    assert result.checked == 2


def test_verify_chain_detects_recomputed_hash_without_relinking() -> None:
    store, ledger = _ledger()
    _fill(ledger, "c1", 4)
    tampered = store._receipts["c1"][1]
    tampered.payload = {"n": "rewritten"}
    tampered.hash = compute_receipt_hash(
        tampered.prev_hash,
        tampered.action,
        tampered.actor,
        tampered.payload,
        tampered.task_id,
        tampered.created_at,
    )

    result = ledger.verify_chain("c1", 100)

    assert result.valid is False
    assert result.checked == 2


def test_verify_chain_window_only_covers_recent_receipts() -> None:
    store, ledger = _ledger()
    _fill(ledger, "c1", 10)
    store._receipts["c1"][0].payload = {"n": "old tamper"}

    recent = ledger.verify_chain("c1", 5)
    full = ledger.verify_chain("c1", 10)

    assert recent.valid is True
    assert recent.checked == 5
    assert full.valid is False
    assert full.checked == 0
