import uuid

from fastapi.testclient import TestClient

from arugami_kernel import main
from arugami_kernel.kernel import Kernel
from arugami_kernel.schemas import GhlEventPayload
from arugami_kernel.settings import KernelSettings
from arugami_kernel.store import InMemoryStore
from arugami_kernel.workers import WorkerRegistry, WorkerSpec, ghl_event_worker

client = TestClient(main.app)


def _configure(monkeypatch, *, secret: str | None = "hook-secret") -> tuple[str, str]:  # noqa: ANN001
    location_id = f"loc-{uuid.uuid4().hex[:8]}"
    client_id = f"client-{uuid.uuid4().hex[:8]}"
    monkeypatch.setattr(
        main,
        "settings",
        KernelSettings(ghl_webhook_secret=secret, ghl_locations={location_id: client_id}),
    )
    return location_id, client_id


def test_webhook_rejects_wrong_secret(monkeypatch) -> None:  # noqa: ANN001
    location_id, _ = _configure(monkeypatch)

    missing = client.post("/webhooks/ghl", json={"locationId": location_id})
    wrong = client.post(
        "/webhooks/ghl",
        json={"locationId": location_id},
        headers={"x-ghl-webhook-secret": "nope"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_webhook_validates_body_and_location(monkeypatch) -> None:  # noqa: ANN001
    _configure(monkeypatch)
    headers = {"x-ghl-webhook-secret": "hook-secret"}

    not_object = client.post("/webhooks/ghl", json=["a", "b"], headers=headers)
    no_location = client.post("/webhooks/ghl", json={"type": "ContactCreate"}, headers=headers)
    unknown = client.post("/webhooks/ghl", json={"locationId": "loc-unknown"}, headers=headers)

    assert not_object.status_code == 400
    assert no_location.status_code == 400
    assert unknown.status_code == 404


def test_webhook_creates_and_processes_task_inline(monkeypatch) -> None:  # noqa: ANN001
    location_id, client_id = _configure(monkeypatch)

    response = client.post(
        "/webhooks/ghl",
        json={
            "type": "ContactCreate",
            "locationId": location_id,
            "contactId": "contact-42",
            "email": "lead@example.com",
            "firstName": "Lead",
            "dateAdded": "2026-03-01T12:00:00Z",
        },
        headers={"x-ghl-webhook-secret": "hook-secret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["processed"] is True
    assert body["status"] == "completed"
    assert body["error"] is None

    task = main.kernel.get_task(body["task_id"], client_id)
    assert task.task_type == "ghl_event"
    assert task.payload == {
        "event_type": "ContactCreate",
        "ghl_location_id": location_id,
        "ghl_contact_id": "contact-42",
        "received_at": "2026-03-01T12:00:00Z",
        "source": "ghl_webhook",
    }
    assert main.kernel.verify_chain(client_id).valid is True


def test_webhook_accepts_when_secret_not_configured(monkeypatch) -> None:  # noqa: ANN001
    location_id, _ = _configure(monkeypatch, secret=None)

    response = client.post("/webhooks/ghl", json={"event": "CallStatusChanged", "location_id": location_id})

    assert response.status_code == 200
    assert response.json()["processed"] is True


def test_webhook_reports_gated_task_without_running_it(monkeypatch) -> None:  # noqa: ANN001
    location_id, client_id = _configure(monkeypatch)
    main.kernel.create_policy(client_id, "ghl_event", "require_approval")

    response = client.post(
        "/webhooks/ghl",
        json={"type": "ContactCreate", "locationId": location_id},
        headers={"x-ghl-webhook-secret": "hook-secret"},
    )

    assert response.status_code == 200
    assert response.json()["processed"] is False
    assert response.json()["status"] == "awaiting_approval"


def test_webhook_acknowledges_worker_failures(monkeypatch) -> None:  # noqa: ANN001
    location_id, client_id = _configure(monkeypatch)

    def exploding(payload):  # noqa: ANN001, ANN202, ARG001
        raise RuntimeError("crm unavailable")

    isolated = Kernel(
        InMemoryStore(),
        WorkerRegistry({"ghl_event": WorkerSpec(handler=exploding, payload_model=GhlEventPayload)}),
    )
    monkeypatch.setattr(main, "kernel", isolated)

    response = client.post(
        "/webhooks/ghl",
        json={"type": "ContactCreate", "locationId": location_id},
        headers={"x-ghl-webhook-secret": "hook-secret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is False
    assert body["status"] == "pending"
    assert body["error"] == "crm unavailable"
    assert isolated.count_pending_tasks(client_id) == 1


def test_webhook_acknowledges_unexpected_errors(monkeypatch) -> None:  # noqa: ANN001
    location_id, _ = _configure(monkeypatch)

    def broken_create(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202, ARG001
        raise RuntimeError("store offline")

    monkeypatch.setattr(main.kernel, "create_task", broken_create)

    response = client.post(
        "/webhooks/ghl",
        json={"type": "ContactCreate", "locationId": location_id},
        headers={"x-ghl-webhook-secret": "hook-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "task_id": None,
        "processed": False,
        "status": None,
        "duration_ms": None,
        "error": "processing_failed",
    }


def test_webhook_does_not_report_another_tasks_outcome(monkeypatch) -> None:  # noqa: ANN001
    location_id, client_id = _configure(monkeypatch)
    isolated = Kernel(
        InMemoryStore(),
        WorkerRegistry({"ghl_event": WorkerSpec(handler=ghl_event_worker, payload_model=GhlEventPayload)}),
    )
    monkeypatch.setattr(main, "kernel", isolated)
    earlier = isolated.create_task(client_id, "ghl_event", {"event_type": "ContactUpdate"}, 10)

    response = client.post(
        "/webhooks/ghl",
        json={"type": "ContactCreate", "locationId": location_id},
        headers={"x-ghl-webhook-secret": "hook-secret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["task_id"] != earlier.task_id
    assert body["processed"] is False
    assert body["status"] == "pending"
    assert isolated.get_task(earlier.task_id, client_id).status == "completed"
    assert isolated.get_task(body["task_id"], client_id).status == "pending"
