from datetime import datetime, timedelta, timezone

from arugami_kernel.kernel import Kernel
from arugami_kernel.retry_policy import RetryPolicy
from arugami_kernel.schemas import GhlEventPayload, PolicyEffect, ReceiptAction
from arugami_kernel.store import InMemoryStore
from arugami_kernel.workers import WorkerRegistry, WorkerSpec, echo_worker, ghl_event_worker


def _boom(payload):  # noqa: ANN001, ANN202, ARG001
    raise RuntimeError("boom")


def _kernel() -> Kernel:
    registry = WorkerRegistry(
        {
            "echo": echo_worker,
            "ghl_event": WorkerSpec(handler=ghl_event_worker, payload_model=GhlEventPayload),
            "boom": _boom,
        }
    )
    return Kernel(InMemoryStore(), registry, retry_policy=RetryPolicy(max_retries=1))


def test_tampered_completed_receipt_breaks_chain_at_its_position() -> None:
    kernel = _kernel()
    kernel.create_task("c1", "ghl_event", {"event_type": "ContactCreate"}, 5)
    kernel.run_next_task()

    chain = kernel.store._receipts["c1"]
    position = next(
        index for index, record in enumerate(chain) if record.action == ReceiptAction.TASK_COMPLETED.value
    )
    chain[position].payload = {"task_type": "ghl_event", "retry_count": 99}

    result = kernel.verify_chain("c1", 50)

    assert result.valid is False
    assert result.checked == position
    assert result.broken_at == chain[position].receipt_id


def test_health_is_green_for_clean_ledger() -> None:
    kernel = _kernel()
    kernel.create_task("c1", "echo", {}, 0)
    kernel.create_task("c1", "echo", {}, 0)
    kernel.run_next_task()

    health = kernel.health("c1")

    assert health.healthy is True
    assert health.chain_valid is True
    assert health.chain_checked > 0
    assert health.pending_tasks == 1
    assert health.failed_tasks == 0


def test_health_reports_failed_tasks() -> None:
    kernel = _kernel()
    kernel.create_task("c1", "boom", {}, 0)
    kernel.run_next_task()

    health = kernel.health("c1")

    assert health.chain_valid is True
    assert health.failed_tasks == 1
    assert health.healthy is False


def test_health_reports_broken_chain_without_raising() -> None:
    kernel = _kernel()
    kernel.create_task("c1", "echo", {}, 0)
    kernel.store._receipts["c1"][0].hash = "0" * 64

    health = kernel.health("c1")

    assert health.healthy is False
    assert health.chain_valid is False
    assert health.chain_checked == 0
    assert health.chain_broken_at == kernel.store._receipts["c1"][0].receipt_id


def test_activity_hides_internal_receipts_and_dedupes_tasks() -> None:
    kernel = _kernel()
    kernel.create_policy("c1", "echo", PolicyEffect.ALLOW)
    first = kernel.create_task("c1", "echo", {}, 0)
    second = kernel.create_task("c1", "boom", {}, 0)
    kernel.run_next_task()
    kernel.run_next_task()

    items = kernel.activity("c1", limit=10)

    actions = {item.action for item in items}
    assert ReceiptAction.POLICY_CHECKED not in actions
    assert ReceiptAction.TASK_CLAIMED not in actions
    task_items = [item for item in items if item.task_id is not None]
    assert len(task_items) == len({item.task_id for item in task_items}) == 2
    by_task = {item.task_id: item for item in task_items}
    assert by_task[first.task_id].action == ReceiptAction.TASK_COMPLETED
    assert by_task[first.task_id].title == "Task completed"
    assert by_task[second.task_id].action == ReceiptAction.TASK_FAILED
    assert "no retries left" in by_task[second.task_id].subtitle
    assert items[-1].action == ReceiptAction.POLICY_CREATED


def test_activity_respects_limit() -> None:
    kernel = _kernel()
    for _ in range(5):
        kernel.create_task("c1", "echo", {}, 0)

    assert len(kernel.activity("c1", limit=3)) == 3
    assert kernel.activity("c1", limit=0) == []


def test_metrics_count_ghl_events_by_type_and_week() -> None:
    now = [datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)]
    registry = WorkerRegistry({"ghl_event": WorkerSpec(handler=ghl_event_worker, payload_model=GhlEventPayload)})
    kernel = Kernel(InMemoryStore(clock=lambda: now[0]), registry)
    kernel.create_task("c1", "ghl_event", {"event_type": "ContactCreate"}, 0)
    kernel.create_task("c1", "ghl_event", {"event_type": "OpportunityCreate"}, 0)
    now[0] += timedelta(days=10)
    kernel.create_task("c1", "ghl_event", {"event_type": "ContactCreate"}, 0)
    kernel.create_task("c1", "ghl_event", {"event_type": "AppointmentBooked"}, 0)
    kernel.create_task("c1", "ghl_event", {"event_type": "NoteCreate"}, 0)
    kernel.create_task("c2", "ghl_event", {"event_type": "ContactCreate"}, 0)
    kernel.run_next_task(client_id="c1")

    metrics = kernel.metrics("c1")

    assert metrics.contacts_total == 2
    assert metrics.contacts_this_week == 1
    assert metrics.opportunities_this_week == 1
    assert metrics.open_items == 4
    assert metrics.total_pipeline_value == 0


def test_metrics_for_empty_client() -> None:
    metrics = _kernel().metrics("nobody")

    assert metrics.model_dump() == {
        "contacts_this_week": 0,
        "contacts_total": 0,
        "opportunities_this_week": 0,
        "open_items": 0,
        "total_pipeline_value": 0.0,
    }
