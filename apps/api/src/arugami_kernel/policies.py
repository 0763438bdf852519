from __future__ import annotations

import uuid

import structlog

from arugami_kernel.receipts import ReceiptLedger
from arugami_kernel.schemas import PolicyDecision, PolicyEffect, PolicyRead, ReceiptAction, TaskRead
from arugami_kernel.store import InMemoryStore, ValidationError, _PolicyRecord

logger = structlog.get_logger()

WILDCARD_TASK_TYPE = "*"


class PolicyEngine:
    """Decides whether a task may run, must wait for an owner, or is refused.

    Lookup order is an enabled policy for the exact task type, then an
    enabled ``*`` policy, then the default ``allow``.
    """

    def __init__(self, store: InMemoryStore, ledger: ReceiptLedger) -> None:
        self._store = store
        self._ledger = ledger

    def evaluate(self, task: TaskRead) -> PolicyDecision:
        policies = [policy for policy in self._store.select_policies(task.client_id) if policy.enabled]
        exact = next((policy for policy in policies if policy.task_type == task.task_type), None)
        wildcard = next((policy for policy in policies if policy.task_type == WILDCARD_TASK_TYPE), None)

        if exact is not None:
            decision = PolicyDecision(
                effect=exact.effect,
                policy=exact,
                reason=f"matched policy for task_type '{task.task_type}'",
            )
        elif wildcard is not None:
            decision = PolicyDecision(effect=wildcard.effect, policy=wildcard, reason="matched wildcard policy")
        else:
            decision = PolicyDecision(effect=PolicyEffect.ALLOW, reason="no matching policy, default allow")

        self._ledger.append(
            task.client_id,
            ReceiptAction.POLICY_CHECKED,
            "system",
            {
                "decision": decision.effect.value,
                "reason": decision.reason,
                "checked_task_type": task.task_type,
            },
            task_id=task.task_id,
            policy_id=decision.policy.policy_id if decision.policy else None,
        )
        logger.info(
            "policy_checked",
            client_id=task.client_id,
            task_id=task.task_id,
            decision=decision.effect.value,
        )
        return decision

    def create_policy(
        self,
        client_id: str,
        task_type: str,
        effect: PolicyEffect,
        description: str | None = None,
        actor: str = "system",
    ) -> PolicyRead:
        if not client_id:
            raise ValidationError("client_id is required")
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValidationError("task_type is required and must be a non-empty string")
        effect = PolicyEffect(effect)
        now = self._store.now_iso()
        record = _PolicyRecord(
            policy_id=str(uuid.uuid4()),
            client_id=client_id,
            task_type=task_type.strip(),
            effect=effect.value,
            description=description,
            enabled=True,
            created_at=now,
            updated_at=now,
        )
        with self._store.transaction():
            policy = self._store.insert_policy(record)
            self._ledger.append(
                client_id,
                ReceiptAction.POLICY_CREATED,
                actor,
                {"task_type": policy.task_type, "effect": policy.effect.value},
                policy_id=policy.policy_id,
            )
        return policy

    def update_policy(
        self,
        policy_id: str,
        client_id: str,
        *,
        effect: PolicyEffect | None = None,
        description: str | None = None,
        enabled: bool | None = None,
        actor: str = "system",
    ) -> PolicyRead:
        changes: dict[str, object] = {}
        if effect is not None:
            changes["effect"] = PolicyEffect(effect).value
        if description is not None:
            changes["description"] = description
        if enabled is not None:
            changes["enabled"] = enabled

        with self._store.transaction():
            previous = self._store.get_policy(policy_id, client_id)
            if not changes:
                return previous
            policy = self._store.update_policy(policy_id, client_id, **changes)
            self._ledger.append(
                client_id,
                ReceiptAction.POLICY_UPDATED,
                actor,
                {
                    "task_type": policy.task_type,
                    "changes": sorted(changes),
                    "previous_effect": previous.effect.value,
                    "effect": policy.effect.value,
                    "enabled": policy.enabled,
                },
                policy_id=policy_id,
            )
        return policy

    def get_policy(self, policy_id: str, client_id: str) -> PolicyRead:
        return self._store.get_policy(policy_id, client_id)

    def list_policies(
        self,
        client_id: str,
        *,
        task_type: str | None = None,
        enabled_only: bool = True,
    ) -> list[PolicyRead]:
        policies = [
            policy
            for policy in self._store.select_policies(client_id)
            if (task_type is None or policy.task_type == task_type)
            and (not enabled_only or policy.enabled)
        ]
        policies.sort(key=lambda policy: policy.created_at)
        return policies
