from datetime import timedelta

import pytest

from arugami_kernel.forward_client import forward_payload
from arugami_kernel.kernel import build_kernel
from arugami_kernel.retry_policy import RetryPolicy
from arugami_kernel.settings import KernelSettings
from arugami_kernel.store import WorkerExecutionError
from arugami_kernel.workers import WorkerRegistry, WorkerSpec, build_default_registry, echo_worker


def test_settings_defaults_from_empty_env() -> None:
    settings = KernelSettings.from_env({})

    assert settings.state_file is None
    assert settings.worker_id == "kernel-dispatcher"
    assert settings.max_retries == 3
    assert settings.retry_backoff_seconds == 0.0
    assert settings.retry_overrides == {}
    assert settings.stale_claim_seconds == 300
    assert settings.ghl_webhook_secret is None
    assert settings.ghl_locations == {}
    assert settings.forward_url is None
    assert settings.cors_allow_origins == ["null"]


def test_settings_parse_env_values() -> None:
    settings = KernelSettings.from_env(
        {
            "KERNEL_STATE_FILE": " /tmp/kernel.json ",
            "KERNEL_WORKER_ID": "worker-7",
            "KERNEL_MAX_RETRIES": "5",
            "KERNEL_RETRY_BACKOFF_SECONDS": "2.5",
            "KERNEL_RETRY_OVERRIDES": "ghl_event=1, webhook_forward=8, broken",
            "KERNEL_STALE_CLAIM_SECONDS": "60",
            "GHL_WEBHOOK_SECRET": "s3cret",
            "KERNEL_GHL_LOCATIONS": "loc-1=client-a,loc-2=client-b",
            "KERNEL_FORWARD_URL": "https://hooks.example.test/in",
            "API_CORS_ALLOW_ORIGINS": "https://a.test, https://b.test",
        }
    )

    assert settings.state_file == "/tmp/kernel.json"
    assert settings.worker_id == "worker-7"
    assert settings.max_retries == 5
    assert settings.retry_backoff_seconds == 2.5
    assert settings.retry_overrides == {"ghl_event": 1, "webhook_forward": 8}
    assert settings.stale_claim_seconds == 60
    assert settings.ghl_webhook_secret == "s3cret"
    assert settings.ghl_locations == {"loc-1": "client-a", "loc-2": "client-b"}
    assert settings.forward_url == "https://hooks.example.test/in"
    assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]


def test_settings_reject_non_numeric_values() -> None:
    with pytest.raises(ValueError, match="KERNEL_MAX_RETRIES"):
        KernelSettings.from_env({"KERNEL_MAX_RETRIES": "many"})
    with pytest.raises(ValueError, match="KERNEL_RETRY_OVERRIDES"):
        KernelSettings.from_env({"KERNEL_RETRY_OVERRIDES": "echo=lots"})


def test_retry_policy_validation_and_backoff() -> None:
    policy = RetryPolicy(max_retries=3, backoff_seconds=5, overrides={"slow": 6})

    assert policy.max_retries_for("slow") == 6
    assert policy.max_retries_for("other") == 3
    assert policy.backoff_for(0) is None
    assert policy.backoff_for(1) == timedelta(seconds=5)
    assert policy.backoff_for(3) == timedelta(seconds=20)
    assert RetryPolicy().backoff_for(2) is None
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=0)
    with pytest.raises(ValueError):
        RetryPolicy(overrides={"x": 0})


def test_build_kernel_wires_settings() -> None:
    settings = KernelSettings.from_env({"KERNEL_MAX_RETRIES": "2", "KERNEL_RETRY_OVERRIDES": "echo=4"})

    kernel = build_kernel(settings)

    assert kernel.dispatcher.retry_policy.max_retries == 2
    assert kernel.dispatcher.retry_policy.max_retries_for("echo") == 4
    assert kernel.stale_claim_after == timedelta(seconds=300)
    assert sorted(kernel.registry) == ["echo", "ghl_event"]


def test_default_registry_adds_forwarder_only_when_configured() -> None:
    plain = build_default_registry(KernelSettings())
    forwarding = build_default_registry(KernelSettings(forward_url="https://hooks.example.test/in"))

    assert plain.task_types() == ["echo", "ghl_event"]
    assert forwarding.task_types() == ["echo", "ghl_event", "webhook_forward"]
    assert forwarding["ghl_event"].payload_model is not None


def test_registry_is_read_only() -> None:
    registry = WorkerRegistry({"echo": echo_worker})

    assert isinstance(registry["echo"], WorkerSpec)
    assert len(registry) == 1
    with pytest.raises(TypeError):
        registry["other"] = WorkerSpec(handler=echo_worker)  # type: ignore[index]
    with pytest.raises(ValueError):
        WorkerRegistry({" ": echo_worker})


def test_forward_payload_posts_json(monkeypatch) -> None:  # noqa: ANN001
    calls: list[tuple[str, dict]] = []

    class _Response:
        status_code = 202

        def raise_for_status(self) -> None:
            return None

    def fake_post(url, **kwargs):  # noqa: ANN001
        calls.append((url, kwargs["json"]))
        return _Response()

    monkeypatch.setattr("arugami_kernel.forward_client.httpx.post", fake_post)

    result = forward_payload("https://hooks.example.test/in", {"event_type": "ContactCreate"})

    assert result.delivered is True
    assert result.status_code == 202
    assert calls == [("https://hooks.example.test/in", {"event_type": "ContactCreate"})]


def test_forward_payload_redacts_failures(monkeypatch) -> None:  # noqa: ANN001
    def fake_post(url, **kwargs):  # noqa: ANN001, ARG001
        raise RuntimeError("connection refused for https://hooks.example.test/in?token=abc123")

    monkeypatch.setattr("arugami_kernel.forward_client.httpx.post", fake_post)

    result = forward_payload("https://hooks.example.test/in", {})

    assert result.delivered is False
    assert "abc123" not in result.message
    assert result.message.startswith("forward failed:")


def test_forward_payload_without_url() -> None:
    result = forward_payload(None, {})

    assert result.delivered is False
    assert result.message == "forward url not configured"


def test_webhook_forward_worker_raises_on_failed_delivery(monkeypatch) -> None:  # noqa: ANN001
    def fake_post(url, **kwargs):  # noqa: ANN001, ARG001
        raise RuntimeError("timeout")

    monkeypatch.setattr("arugami_kernel.forward_client.httpx.post", fake_post)
    registry = build_default_registry(KernelSettings(forward_url="https://hooks.example.test/in"))

    with pytest.raises(WorkerExecutionError, match="forward failed"):
        registry["webhook_forward"].handler({"event_type": "ContactCreate"})
