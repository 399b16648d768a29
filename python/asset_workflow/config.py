"""
Workflow configuration.

The approval chain, the role -> stage table and the escalation policy are
passed into the engine as one ``WorkflowConfig`` so each deployment can run
its own chain without code changes. ``WorkflowConfig.from_env()`` reads the
same values from environment variables.
"""

import os
from dataclasses import dataclass, field

from .models import Stage, TerminalLevel, ScopeLevel, RequestType

CANONICAL_CHAIN = (Stage.LEVEL1, Stage.HOD, Stage.CFO)

EXTENDED_CHAIN = (
    Stage.LEVEL1, Stage.LEVEL2, Stage.LEVEL3, Stage.HOD,
    Stage.INVENTORY, Stage.PURCHASE, Stage.BUDGET, Stage.CFO,
)

DEFAULT_ROLE_STAGES = {
    "supervisor": Stage.LEVEL1,
    "level2": Stage.LEVEL2,
    "level3": Stage.LEVEL3,
    "hod": Stage.HOD,
    "inventory": Stage.INVENTORY,
    "purchase": Stage.PURCHASE,
    "budget": Stage.BUDGET,
    "cfo": Stage.CFO,
}


def _parse_stages(raw: str) -> tuple[Stage, ...]:
    return tuple(Stage(part.strip()) for part in raw.split(",") if part.strip())


def _parse_role_stages(raw: str) -> dict[str, Stage]:
    mapping = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        role, _, stage = pair.partition(":")
        if not stage:
            raise ValueError(f"Role mapping '{pair}' must look like role:stage")
        mapping[role.strip()] = Stage(stage.strip())
    return mapping


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class WorkflowConfig:
    """Approval chain and escalation policy for one deployment."""

    chain: tuple[Stage, ...] = CANONICAL_CHAIN
    role_stages: dict[str, Stage] = field(default_factory=lambda: dict(DEFAULT_ROLE_STAGES))
    # None means every chain stage except the last
    escalatable_stages: tuple[Stage, ...] | None = None
    escalate_after_hours: float = 24.0
    sweep_interval_seconds: int = 900
    transfer_stage: Stage = Stage.LEVEL1
    cross_hospital_entry_stage: Stage = Stage.LEVEL3
    max_retries: int = 3
    escalation_enabled: bool = False

    def __post_init__(self):
        chain = tuple(Stage(s) for s in self.chain)
        if not chain:
            raise ValueError("Approval chain must name at least one stage")
        if len(set(chain)) != len(chain):
            raise ValueError("Approval chain must not repeat a stage")
        object.__setattr__(self, "chain", chain)

        if self.escalatable_stages is None:
            escalatable = chain[:-1]
        else:
            escalatable = tuple(Stage(s) for s in self.escalatable_stages)
        for stage in escalatable:
            if stage not in chain:
                raise ValueError(f"Escalatable stage '{stage.value}' is not in the chain")
            if stage == chain[-1]:
                raise ValueError(
                    f"Stage '{stage.value}' is the last stage and cannot be escalated past"
                )
        object.__setattr__(self, "escalatable_stages", escalatable)

        if Stage(self.transfer_stage) not in chain:
            raise ValueError(f"Transfer stage '{Stage(self.transfer_stage).value}' is not in the chain")
        if self.escalate_after_hours <= 0:
            raise ValueError("escalate_after_hours must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    # Chain navigation

    def successor(self, stage: Stage | str) -> str:
        """Stage after ``stage``, or 'completed' after the last one."""
        stage = Stage(stage)
        idx = self.chain.index(stage)
        if idx == len(self.chain) - 1:
            return TerminalLevel.COMPLETED.value
        return self.chain[idx + 1].value

    def position(self, level: str) -> int:
        """Ordinal of a level along the chain; terminal markers sort last."""
        if level in (TerminalLevel.COMPLETED.value, TerminalLevel.REJECTED.value):
            return len(self.chain)
        return self.chain.index(Stage(level))

    def stage_for_role(self, role: str) -> Stage | None:
        stage = self.role_stages.get(role)
        if stage is None or stage not in self.chain:
            return None
        return stage

    def initial_stage(self, request_type: str, scope_level: str) -> Stage:
        """Stage a new request starts at.

        Transfers use the fixed transfer stage. Cross-hospital requests skip
        the local stages: they start at the first chain stage ranked at or
        after the cross-hospital entry stage.
        """
        if request_type == RequestType.ASSET_TRANSFER.value:
            return Stage(self.transfer_stage)
        if scope_level == ScopeLevel.CROSS_HOSPITAL.value:
            entry_rank = Stage(self.cross_hospital_entry_stage).rank
            for stage in self.chain:
                if stage.rank >= entry_rank:
                    return stage
            return self.chain[-1]
        return self.chain[0]

    def stages_for(self, request_type: str, initial: Stage) -> tuple[Stage, ...]:
        """Stages that appear in a new request's approval flow."""
        if request_type == RequestType.ASSET_TRANSFER.value:
            return (initial,)
        return self.chain[self.chain.index(initial):]

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        """Build a config from ASSET_WORKFLOW_* environment variables."""
        kwargs = {}
        if os.environ.get("ASSET_WORKFLOW_CHAIN"):
            kwargs["chain"] = _parse_stages(os.environ["ASSET_WORKFLOW_CHAIN"])
        if os.environ.get("ASSET_WORKFLOW_ROLE_STAGES"):
            kwargs["role_stages"] = _parse_role_stages(os.environ["ASSET_WORKFLOW_ROLE_STAGES"])
        if os.environ.get("ASSET_WORKFLOW_ESCALATABLE"):
            kwargs["escalatable_stages"] = _parse_stages(os.environ["ASSET_WORKFLOW_ESCALATABLE"])
        if os.environ.get("ASSET_WORKFLOW_ESCALATE_AFTER_HOURS"):
            kwargs["escalate_after_hours"] = float(os.environ["ASSET_WORKFLOW_ESCALATE_AFTER_HOURS"])
        if os.environ.get("ASSET_WORKFLOW_SWEEP_SECONDS"):
            kwargs["sweep_interval_seconds"] = int(os.environ["ASSET_WORKFLOW_SWEEP_SECONDS"])
        if os.environ.get("ASSET_WORKFLOW_TRANSFER_STAGE"):
            kwargs["transfer_stage"] = Stage(os.environ["ASSET_WORKFLOW_TRANSFER_STAGE"].strip())
        if os.environ.get("ASSET_WORKFLOW_CROSS_HOSPITAL_ENTRY"):
            kwargs["cross_hospital_entry_stage"] = Stage(
                os.environ["ASSET_WORKFLOW_CROSS_HOSPITAL_ENTRY"].strip()
            )
        if os.environ.get("ASSET_WORKFLOW_MAX_RETRIES"):
            kwargs["max_retries"] = int(os.environ["ASSET_WORKFLOW_MAX_RETRIES"])
        kwargs["escalation_enabled"] = _env_bool("ASSET_WORKFLOW_ESCALATION_ENABLED", False)
        return cls(**kwargs)
