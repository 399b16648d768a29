"""Tests for chain navigation and configuration loading."""

import pytest

from asset_workflow.config import WorkflowConfig, EXTENDED_CHAIN
from asset_workflow.models import Stage


class TestChainNavigation:
    """Tests for successor/position on the configured chain."""

    def test_default_chain_is_level1_hod_cfo(self):
        """Default deployment runs the three-stage chain."""
        config = WorkflowConfig()
        assert config.chain == (Stage.LEVEL1, Stage.HOD, Stage.CFO)

    def test_successor_walks_the_chain(self):
        """Each stage leads to the next; the last leads to completed."""
        config = WorkflowConfig()
        assert config.successor(Stage.LEVEL1) == "hod"
        assert config.successor("hod") == "cfo"
        assert config.successor(Stage.CFO) == "completed"

    def test_successor_on_extended_chain(self):
        """Extended chains step through every intermediate stage."""
        config = WorkflowConfig(chain=EXTENDED_CHAIN)
        assert config.successor(Stage.LEVEL1) == "level2"
        assert config.successor(Stage.BUDGET) == "cfo"

    def test_position_orders_terminal_markers_last(self):
        """Terminal markers sort after every stage."""
        config = WorkflowConfig()
        assert config.position("level1") < config.position("hod") < config.position("cfo")
        assert config.position("completed") == config.position("rejected") == 3

    def test_stage_for_role(self):
        """Roles resolve to stages only when the stage is part of the chain."""
        config = WorkflowConfig()
        assert config.stage_for_role("supervisor") == Stage.LEVEL1
        assert config.stage_for_role("cfo") == Stage.CFO
        assert config.stage_for_role("level2") is None
        assert config.stage_for_role("janitor") is None


class TestInitialStage:
    """Tests for where new requests enter the chain."""

    def test_department_request_starts_at_first_stage(self):
        config = WorkflowConfig()
        assert config.initial_stage("procurement", "department") == Stage.LEVEL1
        assert config.initial_stage("scrap", "hospital") == Stage.LEVEL1

    def test_transfer_uses_transfer_stage(self):
        """Transfers start at the fixed transfer stage and only carry that stage."""
        config = WorkflowConfig()
        initial = config.initial_stage("asset_transfer", "cross_hospital")
        assert initial == Stage.LEVEL1
        assert config.stages_for("asset_transfer", initial) == (Stage.LEVEL1,)

    def test_cross_hospital_skips_local_stages(self):
        """Cross-hospital requests enter at the first stage ranked at or after level3."""
        config = WorkflowConfig()
        initial = config.initial_stage("procurement", "cross_hospital")
        assert initial == Stage.HOD
        assert config.stages_for("procurement", initial) == (Stage.HOD, Stage.CFO)

    def test_cross_hospital_on_extended_chain(self):
        config = WorkflowConfig(chain=EXTENDED_CHAIN)
        assert config.initial_stage("procurement", "cross_hospital") == Stage.LEVEL3


class TestValidation:
    """Tests for config validation."""

    def test_default_escalatable_is_all_but_last(self):
        config = WorkflowConfig()
        assert config.escalatable_stages == (Stage.LEVEL1, Stage.HOD)

    def test_last_stage_cannot_be_escalatable(self):
        with pytest.raises(ValueError):
            WorkflowConfig(escalatable_stages=(Stage.CFO,))

    def test_escalatable_stage_must_be_in_chain(self):
        with pytest.raises(ValueError):
            WorkflowConfig(escalatable_stages=(Stage.BUDGET,))

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            WorkflowConfig(chain=())

    def test_repeated_stage_rejected(self):
        with pytest.raises(ValueError):
            WorkflowConfig(chain=(Stage.LEVEL1, Stage.LEVEL1, Stage.CFO))

    def test_transfer_stage_must_be_in_chain(self):
        with pytest.raises(ValueError):
            WorkflowConfig(transfer_stage=Stage.LEVEL2)

    def test_non_positive_window_rejected(self):
        with pytest.raises(ValueError):
            WorkflowConfig(escalate_after_hours=0)


class TestFromEnv:
    """Tests for WorkflowConfig.from_env()."""

    def test_defaults_without_environment(self, monkeypatch):
        for name in ("ASSET_WORKFLOW_CHAIN", "ASSET_WORKFLOW_ESCALATION_ENABLED",
                     "ASSET_WORKFLOW_ESCALATE_AFTER_HOURS"):
            monkeypatch.delenv(name, raising=False)
        config = WorkflowConfig.from_env()
        assert config.chain == (Stage.LEVEL1, Stage.HOD, Stage.CFO)
        assert config.escalation_enabled is False
        assert config.escalate_after_hours == 24.0

    def test_reads_chain_roles_and_policy(self, monkeypatch):
        monkeypatch.setenv("ASSET_WORKFLOW_CHAIN", "level1, level2, cfo")
        monkeypatch.setenv("ASSET_WORKFLOW_ROLE_STAGES", "ward_lead:level1,manager:level2,cfo:cfo")
        monkeypatch.setenv("ASSET_WORKFLOW_ESCALATE_AFTER_HOURS", "12")
        monkeypatch.setenv("ASSET_WORKFLOW_SWEEP_SECONDS", "60")
        monkeypatch.setenv("ASSET_WORKFLOW_ESCALATION_ENABLED", "true")

        config = WorkflowConfig.from_env()

        assert config.chain == (Stage.LEVEL1, Stage.LEVEL2, Stage.CFO)
        assert config.stage_for_role("manager") == Stage.LEVEL2
        assert config.stage_for_role("supervisor") is None
        assert config.escalate_after_hours == 12.0
        assert config.sweep_interval_seconds == 60
        assert config.escalation_enabled is True

    def test_malformed_role_mapping(self, monkeypatch):
        monkeypatch.setenv("ASSET_WORKFLOW_ROLE_STAGES", "supervisor")
        with pytest.raises(ValueError):
            WorkflowConfig.from_env()
