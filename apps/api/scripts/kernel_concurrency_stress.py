#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_evidence_paths() -> tuple[Path, Path]:
    timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_dir = _repo_root() / "docs" / "evidence" / "concurrency"
    return (
        base_dir / f"kernel-concurrency-stress-{timestamp}.json",
        base_dir / f"kernel-concurrency-stress-{timestamp}.md",
    )


def parse_args() -> argparse.Namespace:
    default_json, default_md = _default_evidence_paths()
    parser = argparse.ArgumentParser(description="Run the kernel concurrency stress suite and write evidence files.")
    parser.add_argument("--output-json", type=Path, default=default_json, help="path to JSON evidence output")
    parser.add_argument("--output-md", type=Path, default=default_md, help="path to Markdown evidence output")
    parser.add_argument("--claim-iterations", type=int, default=4)
    parser.add_argument("--claim-parallelism", type=int, default=8)
    parser.add_argument("--claim-task-count", type=int, default=12)
    parser.add_argument("--ledger-iterations", type=int, default=4)
    parser.add_argument("--ledger-parallelism", type=int, default=8)
    parser.add_argument("--ledger-clients", type=int, default=3)
    parser.add_argument("--ledger-tasks-per-client", type=int, default=10)
    parser.add_argument("--approval-iterations", type=int, default=4)
    parser.add_argument("--approval-parallelism", type=int, default=8)
    parser.add_argument("--approval-task-count", type=int, default=10)
    return parser.parse_args()


def _render_markdown(report: dict[str, Any], json_path: Path) -> str:
    lines: list[str] = []
    summary = report["summary"]
    lines.append("# Kernel Concurrency Stress Evidence")
    lines.append("")
    lines.append(f"- Generated at (UTC): `{report['generated_at_utc']}`")
    lines.append(f"- Python: `{report['python']}`")
    lines.append(f"- JSON evidence: `{json_path}`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(f"- Overall status: `{summary['overall_status']}`")
    lines.append(f"- Scenarios: `{summary['scenario_count']}`")
    lines.append(f"- Invariants passed: `{summary['invariants_passed']}/{summary['invariants_total']}`")
    lines.append("")

    for scenario in report["scenarios"]:
        lines.append(f"## Scenario: {scenario['name']}")
        lines.append("")
        lines.append(f"- Objective: {scenario['objective']}")
        lines.append(f"- Status: `{scenario['status']}`")
        lines.append(f"- Iterations: `{scenario['iterations']}`")
        lines.append("")
        lines.append("### Invariants")
        lines.append("")
        for invariant in scenario["invariants"]:
            marker = "PASS" if invariant["passed"] else "FAIL"
            lines.append(f"- `{marker}` {invariant['id']}: {invariant['description']}")
            if not invariant["passed"]:
                lines.append(f"  failures: `{invariant['actual_failures']}`")
        lines.append("")

    lines.append("## Config")
    lines.append("")
    for key, value in report["config"].items():
        lines.append(f"- `{key}`: `{value}`")
    lines.append("")

    return "\n".join(lines)


def main() -> int:
    args = parse_args()

    if min(
        args.claim_iterations,
        args.claim_parallelism,
        args.claim_task_count,
        args.ledger_iterations,
        args.ledger_parallelism,
        args.ledger_clients,
        args.ledger_tasks_per_client,
        args.approval_iterations,
        args.approval_parallelism,
        args.approval_task_count,
    ) < 1:
        print("[stress] all numeric options must be >= 1", file=sys.stderr)
        return 2

    try:
        from arugami_kernel.concurrency_stress import ConcurrencyStressConfig, run_concurrency_stress_suite
    except ModuleNotFoundError as exc:
        print(f"[stress] missing dependency: {exc.name}", file=sys.stderr)
        print("[stress] install the kernel before running the stress suite:", file=sys.stderr)
        print("  python3 -m venv .venv && .venv/bin/pip install -e .[test]", file=sys.stderr)
        return 2

    config = ConcurrencyStressConfig(
        claim_iterations=args.claim_iterations,
        claim_parallelism=args.claim_parallelism,
        claim_task_count=args.claim_task_count,
        ledger_iterations=args.ledger_iterations,
        ledger_parallelism=args.ledger_parallelism,
        ledger_clients=args.ledger_clients,
        ledger_tasks_per_client=args.ledger_tasks_per_client,
        approval_iterations=args.approval_iterations,
        approval_parallelism=args.approval_parallelism,
        approval_task_count=args.approval_task_count,
    )
    report = run_concurrency_stress_suite(config)
    report["python"] = platform.python_version()

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_md.parent.mkdir(parents=True, exist_ok=True)

    args.output_json.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    args.output_md.write_text(_render_markdown(report, args.output_json) + "\n", encoding="utf-8")

    print(f"[stress] evidence json: {args.output_json}")
    print(f"[stress] evidence md:   {args.output_md}")
    print(f"[stress] summary:       {report['summary']}")

    return 0 if report["summary"]["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
