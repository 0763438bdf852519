from __future__ import annotations

import itertools
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from arugami_kernel.kernel import Kernel
from arugami_kernel.schemas import PolicyEffect, ReceiptAction, TaskStatus
from arugami_kernel.store import ConcurrencyConflict, InMemoryStore, InvalidStateError
from arugami_kernel.workers import WorkerRegistry, WorkerSpec, echo_worker

_client_seq = itertools.count(1)

RECEIPT_SCAN_LIMIT = 200


@dataclass(frozen=True)
class ConcurrencyStressConfig:
    claim_iterations: int = 4
    claim_parallelism: int = 8
    claim_task_count: int = 12
    ledger_iterations: int = 4
    ledger_parallelism: int = 8
    ledger_clients: int = 3
    ledger_tasks_per_client: int = 10
    approval_iterations: int = 4
    approval_parallelism: int = 8
    approval_task_count: int = 10


def run_concurrency_stress_suite(config: ConcurrencyStressConfig | None = None) -> dict[str, Any]:
    cfg = config or ConcurrencyStressConfig()

    claim_iterations = [_run_claim_iteration(index, cfg) for index in range(cfg.claim_iterations)]
    ledger_iterations = [_run_ledger_iteration(index, cfg) for index in range(cfg.ledger_iterations)]
    approval_iterations = [_run_approval_dispatch_iteration(index, cfg) for index in range(cfg.approval_iterations)]

    scenarios = [
        _scenario_report(
            name="parallel-claim-race",
            objective="Parallel run-next loops execute every pending task exactly once.",
            iterations=claim_iterations,
            metric_keys=[
                "attempts_total",
                "completed_count",
                "idle_count",
                "unexpected_error_count",
                "max_claims_per_task",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="multi-client-ledger-race",
            objective="Interleaved writers across clients keep every receipt chain verifiable.",
            iterations=ledger_iterations,
            metric_keys=[
                "created_count",
                "append_conflict_count",
                "unexpected_error_count",
                "receipt_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="approval-dispatch-race",
            objective="Creates and approvals racing the dispatcher never let a held task run before approval.",
            iterations=approval_iterations,
            metric_keys=[
                "created_count",
                "ungated_count",
                "approval_success_count",
                "approval_rejected_count",
                "completed_count",
                "unexpected_error_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "kernel-concurrency-stress",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "claim_iterations": cfg.claim_iterations,
            "claim_parallelism": cfg.claim_parallelism,
            "claim_task_count": cfg.claim_task_count,
            "ledger_iterations": cfg.ledger_iterations,
            "ledger_parallelism": cfg.ledger_parallelism,
            "ledger_clients": cfg.ledger_clients,
            "ledger_tasks_per_client": cfg.ledger_tasks_per_client,
            "approval_iterations": cfg.approval_iterations,
            "approval_parallelism": cfg.approval_parallelism,
            "approval_task_count": cfg.approval_task_count,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _build_kernel() -> Kernel:
    return Kernel(InMemoryStore(), WorkerRegistry({"echo": WorkerSpec(handler=echo_worker)}))


def _run_claim_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    kernel = _build_kernel()
    client_id = _next_client("claim")
    for task_index in range(cfg.claim_task_count):
        kernel.create_task(client_id, "echo", {"n": task_index}, task_index % 3)

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    completed_ids: list[str] = []
    max_attempts = cfg.claim_task_count * 10 + cfg.claim_parallelism

    def worker() -> None:
        while True:
            with lock:
                if metrics["attempts_total"] >= max_attempts:
                    return
                metrics["attempts_total"] += 1
            try:
                outcome = kernel.run_next_task(client_id=client_id)
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1
                continue
            with lock:
                if outcome.idle:
                    metrics["idle_count"] += 1
                    return
                if outcome.outcome == "completed" and outcome.task_id is not None:
                    metrics["completed_count"] += 1
                    completed_ids.append(outcome.task_id)

    with ThreadPoolExecutor(max_workers=cfg.claim_parallelism) as executor:
        futures = [executor.submit(worker) for _ in range(cfg.claim_parallelism)]
        for future in as_completed(futures):
            future.result()

    claims = kernel.get_receipts(client_id, limit=RECEIPT_SCAN_LIMIT, action=ReceiptAction.TASK_CLAIMED)
    claims_per_task = Counter(receipt.task_id for receipt in claims)
    status_counts = Counter(task.status.value for task in kernel.get_tasks(client_id, limit=100))
    verification = kernel.verify_chain(client_id, RECEIPT_SCAN_LIMIT)

    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "completed_count": int(metrics["completed_count"]),
        "idle_count": int(metrics["idle_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "unique_completed_tasks": len(set(completed_ids)),
        "max_claims_per_task": max(claims_per_task.values(), default=0),
        "task_status_counts": dict(status_counts),
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    invariants = [
        _invariant(
            "all_tasks_completed_once",
            "every task completed exactly once",
            metrics_payload["completed_count"] == cfg.claim_task_count
            and metrics_payload["unique_completed_tasks"] == cfg.claim_task_count,
            expected={"task_count": cfg.claim_task_count},
            actual={
                "completed_count": metrics_payload["completed_count"],
                "unique_completed_tasks": metrics_payload["unique_completed_tasks"],
            },
        ),
        _invariant(
            "single_claim_per_task",
            "no task was claimed more than once",
            metrics_payload["max_claims_per_task"] <= 1,
            expected={"max_claims_per_task": 1},
            actual={"max_claims_per_task": metrics_payload["max_claims_per_task"]},
        ),
        _invariant(
            "chain_valid",
            "receipt chain verifies after the race",
            verification.valid,
            expected={"valid": True},
            actual=verification.model_dump(),
        ),
        _invariant(
            "no_unexpected_errors",
            "no unexpected exceptions escaped run-next",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]
    return {"iteration": index, "metrics": metrics_payload, "invariants": invariants}


def _run_ledger_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    kernel = _build_kernel()
    clients = [_next_client("ledger") for _ in range(cfg.ledger_clients)]
    jobs = [
        (client_id, task_index)
        for task_index in range(cfg.ledger_tasks_per_client)
        for client_id in clients
    ]

    lock = threading.Lock()
    metrics: Counter[str] = Counter()

    def writer(client_id: str, task_index: int) -> None:
        try:
            kernel.create_task(client_id, "echo", {"n": task_index})
        except ConcurrencyConflict:
            with lock:
                metrics["append_conflict_count"] += 1
            return
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        with lock:
            metrics["created_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.ledger_parallelism) as executor:
        futures = [executor.submit(writer, client_id, task_index) for client_id, task_index in jobs]
        for future in as_completed(futures):
            future.result()

    verifications = {client_id: kernel.verify_chain(client_id, RECEIPT_SCAN_LIMIT) for client_id in clients}
    receipt_counts = {
        client_id: len(kernel.get_receipts(client_id, limit=RECEIPT_SCAN_LIMIT)) for client_id in clients
    }
    # task_created + policy_checked per task
    expected_per_client = cfg.ledger_tasks_per_client * 2

    metrics_payload = {
        "created_count": int(metrics["created_count"]),
        "append_conflict_count": int(metrics["append_conflict_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "receipt_count": sum(receipt_counts.values()),
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    invariants = [
        _invariant(
            "all_chains_valid",
            "every client chain verifies",
            all(item.valid for item in verifications.values()),
            expected={"valid": True},
            actual={client_id: item.model_dump() for client_id, item in verifications.items()},
        ),
        _invariant(
            "receipts_complete",
            "each client holds exactly its own receipts",
            all(count == expected_per_client for count in receipt_counts.values()),
            expected={"receipts_per_client": expected_per_client},
            actual=receipt_counts,
        ),
        _invariant(
            "no_lost_writes",
            "every create succeeded",
            metrics_payload["created_count"] == len(jobs),
            expected={"created_count": len(jobs)},
            actual={
                "created_count": metrics_payload["created_count"],
                "append_conflict_count": metrics_payload["append_conflict_count"],
                "unexpected_error_count": metrics_payload["unexpected_error_count"],
            },
        ),
    ]
    return {"iteration": index, "metrics": metrics_payload, "invariants": invariants}


def _run_approval_dispatch_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    kernel = _build_kernel()
    client_id = _next_client("approval")
    kernel.create_policy(client_id, "echo", PolicyEffect.REQUIRE_APPROVAL)

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    approvals_done = threading.Event()

    def creator(task_index: int) -> str | None:
        try:
            task = kernel.create_task(client_id, "echo", {"n": task_index})
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return None
        with lock:
            metrics["created_count"] += 1
            if task.status != TaskStatus.AWAITING_APPROVAL:
                metrics["ungated_count"] += 1
        return task.task_id

    def approver(task_id: str) -> None:
        try:
            kernel.approve_task(task_id, client_id, "user:stress-owner")
        except InvalidStateError:
            with lock:
                metrics["approval_rejected_count"] += 1
            return
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        with lock:
            metrics["approval_success_count"] += 1

    def dispatcher() -> None:
        while True:
            try:
                outcome = kernel.run_next_task(client_id=client_id)
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1
                return
            if outcome.idle:
                if approvals_done.is_set():
                    return
                time.sleep(0)
                continue
            if outcome.outcome == "completed":
                with lock:
                    metrics["completed_count"] += 1

    # Dispatchers start first so every create races them. Each task is
    # approved twice; the second approval must be rejected.
    with ThreadPoolExecutor(max_workers=cfg.approval_parallelism + 2) as executor:
        dispatch_futures = [executor.submit(dispatcher) for _ in range(2)]
        create_futures = [executor.submit(creator, task_index) for task_index in range(cfg.approval_task_count)]
        approval_futures = []
        for future in as_completed(create_futures):
            task_id = future.result()
            if task_id is not None:
                approval_futures.extend(executor.submit(approver, task_id) for _ in range(2))
        for future in as_completed(approval_futures):
            future.result()
        approvals_done.set()
        for future in as_completed(dispatch_futures):
            future.result()

    receipts = list(reversed(kernel.get_receipts(client_id, limit=RECEIPT_SCAN_LIMIT)))
    approved_tasks: set[str] = set()
    claimed_before_approval = 0
    for receipt in receipts:
        if receipt.action == ReceiptAction.OWNER_APPROVAL and receipt.task_id is not None:
            approved_tasks.add(receipt.task_id)
        elif receipt.action == ReceiptAction.TASK_CLAIMED and receipt.task_id not in approved_tasks:
            claimed_before_approval += 1

    status_counts = Counter(task.status.value for task in kernel.get_tasks(client_id, limit=100))
    verification = kernel.verify_chain(client_id, RECEIPT_SCAN_LIMIT)

    metrics_payload = {
        "created_count": int(metrics["created_count"]),
        "ungated_count": int(metrics["ungated_count"]),
        "approval_success_count": int(metrics["approval_success_count"]),
        "approval_rejected_count": int(metrics["approval_rejected_count"]),
        "completed_count": int(metrics["completed_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "claimed_before_approval": claimed_before_approval,
        "task_status_counts": dict(status_counts),
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    invariants = [
        _invariant(
            "all_creates_gated",
            "every task created under dispatch load was held for approval",
            metrics_payload["created_count"] == cfg.approval_task_count and metrics_payload["ungated_count"] == 0,
            expected={"created_count": cfg.approval_task_count, "ungated_count": 0},
            actual={
                "created_count": metrics_payload["created_count"],
                "ungated_count": metrics_payload["ungated_count"],
                "unexpected_error_count": metrics_payload["unexpected_error_count"],
            },
        ),
        _invariant(
            "single_approval_per_task",
            "each held task is approved exactly once",
            metrics_payload["approval_success_count"] == cfg.approval_task_count
            and metrics_payload["approval_rejected_count"] == cfg.approval_task_count,
            expected={
                "approval_success_count": cfg.approval_task_count,
                "approval_rejected_count": cfg.approval_task_count,
            },
            actual={
                "approval_success_count": metrics_payload["approval_success_count"],
                "approval_rejected_count": metrics_payload["approval_rejected_count"],
            },
        ),
        _invariant(
            "no_claim_before_approval",
            "no task was claimed before its owner approval receipt",
            claimed_before_approval == 0,
            expected={"claimed_before_approval": 0},
            actual={"claimed_before_approval": claimed_before_approval},
        ),
        _invariant(
            "all_approved_tasks_completed",
            "every approved task ran to completion",
            status_counts.get(TaskStatus.COMPLETED.value, 0) == cfg.approval_task_count,
            expected={"completed": cfg.approval_task_count},
            actual=dict(status_counts),
        ),
        _invariant(
            "chain_valid",
            "receipt chain verifies after the race",
            verification.valid,
            expected={"valid": True},
            actual=verification.model_dump(),
        ),
    ]
    return {"iteration": index, "metrics": metrics_payload, "invariants": invariants}


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append(
                    {
                        "iteration": iteration["iteration"],
                        "actual": invariant["actual"],
                    }
                )

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"

    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _next_client(prefix: str) -> str:
    return f"stress-{prefix}-{next(_client_seq)}"


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": passed,
        "expected": expected,
        "actual": actual,
    }
