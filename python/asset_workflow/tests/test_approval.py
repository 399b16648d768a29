"""Tests for the ApprovalStateMachine: approve, reject, escalate."""

import pytest

from conftest import FailingSink, make_actor, request_payload

from asset_workflow.approval import ESCALATION_REMARK
from asset_workflow.errors import (
    AlreadyClosedError, ConcurrencyConflictError, NotFoundError,
    OutOfScopeError, StageMismatchError,
)
from asset_workflow.events import EventDispatcher
from asset_workflow.service import RequestService


class TestApprove:
    """Tests for walking a request through the chain."""

    def test_procurement_walks_level1_hod_cfo(self, service, count_request, supervisor, hod, cfo):
        """Each approver advances one stage; the last one completes the request."""
        request = service.approve_request(count_request.id, supervisor, "Needed for ICU")
        assert request.current_level == "hod"
        assert request.final_status == "pending"
        assert request.approval_flow["level1"]["status"] == "approved"
        assert request.approval_flow["level1"]["approved_by"] == supervisor.actor_id
        assert request.approval_flow["level1"]["remarks"] == "Needed for ICU"

        request = service.approve_request(count_request.id, hod)
        assert request.current_level == "cfo"

        request = service.approve_request(count_request.id, cfo)
        assert request.current_level == "completed"
        assert request.final_status == "approved"
        assert request.approval_flow["cfo"]["status"] == "approved"

    def test_wrong_stage_is_refused(self, service, count_request, hod):
        with pytest.raises(StageMismatchError):
            service.approve_request(count_request.id, hod)
        assert service.get_request(count_request.id).current_level == "level1"

    def test_role_outside_workflow_is_refused(self, service, count_request, requester):
        with pytest.raises(StageMismatchError):
            service.approve_request(count_request.id, requester)

    def test_other_organization_is_out_of_scope(self, service, count_request):
        outsider = make_actor("supervisor", actor_id="u-other", organization_id="ORG2")
        with pytest.raises(OutOfScopeError):
            service.approve_request(count_request.id, outsider)

    def test_scope_is_checked_before_stage(self, service, count_request):
        """An outsider who also holds the wrong stage is reported as out of scope."""
        outsider = make_actor("cfo", actor_id="u-other-cfo", organization_id="ORG2")
        with pytest.raises(OutOfScopeError):
            service.approve_request(count_request.id, outsider)

    def test_unknown_request(self, service, supervisor):
        with pytest.raises(NotFoundError):
            service.approve_request(4242, supervisor)

    def test_completed_request_is_closed(self, service, count_request, supervisor, hod, cfo):
        for approver in (supervisor, hod, cfo):
            service.approve_request(count_request.id, approver)
        with pytest.raises(AlreadyClosedError):
            service.approve_request(count_request.id, cfo)

    def test_transfer_approval_keeps_stage(self, service, transfer_request, supervisor, notifications):
        """Transfers have one gate; approval is recorded but fulfillment closes them."""
        request = service.approve_request(transfer_request.id, supervisor)

        assert request.current_level == "level1"
        assert request.final_status == "pending"
        assert request.approval_flow == {
            "level1": {
                "status": "approved",
                "approved_by": supervisor.actor_id,
                "date": request.approval_flow["level1"]["date"],
                "remarks": "",
            }
        }
        assert notifications.events == []

    def test_stage_never_moves_backwards(self, service, count_request, supervisor, hod, cfo):
        config = service.config
        seen = [config.position(service.get_request(count_request.id).current_level)]
        service.machine.escalate(count_request.id)
        service.db.commit()
        seen.append(config.position(service.get_request(count_request.id).current_level))
        with pytest.raises(StageMismatchError):
            service.approve_request(count_request.id, supervisor)
        seen.append(config.position(service.get_request(count_request.id).current_level))
        service.approve_request(count_request.id, hod)
        seen.append(config.position(service.get_request(count_request.id).current_level))
        service.approve_request(count_request.id, cfo)
        seen.append(config.position(service.get_request(count_request.id).current_level))

        assert seen == sorted(seen)
        assert seen[-1] == len(config.chain)

    def test_retry_after_lost_race(self, service, count_request, supervisor, monkeypatch):
        """A human decision that loses once is re-evaluated and applied."""
        original = service.requests.conditional_update
        calls = []

        def flaky_update(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                return False
            return original(*args, **kwargs)

        monkeypatch.setattr(service.requests, "conditional_update", flaky_update)
        request = service.approve_request(count_request.id, supervisor)

        assert len(calls) == 2
        assert request.current_level == "hod"

    def test_gives_up_after_max_retries(self, service, count_request, supervisor, monkeypatch):
        monkeypatch.setattr(service.requests, "conditional_update", lambda *args, **kwargs: False)
        with pytest.raises(ConcurrencyConflictError):
            service.approve_request(count_request.id, supervisor)


class TestReject:
    """Tests for rejection and asset release."""

    def test_reject_transfer_releases_both_assets(self, service, transfer_request, supervisor, idle_assets):
        """Rejecting an asset-transfer request frees every asset it reserved."""
        first, second = idle_assets[0].id, idle_assets[1].id
        assert service.assets.get(first).is_reserved is True
        assert service.assets.get(second).is_reserved is True

        request = service.reject_request(transfer_request.id, supervisor, "Not justified")

        assert request.final_status == "rejected"
        assert request.current_level == "rejected"
        assert request.approval_flow["level1"]["status"] == "rejected"
        assert request.approval_flow["level1"]["remarks"] == "Not justified"
        assert service.assets.get(first).is_reserved is False
        assert service.assets.get(second).is_reserved is False

    def test_reject_at_later_stage(self, service, count_request, supervisor, hod):
        service.approve_request(count_request.id, supervisor)
        request = service.reject_request(count_request.id, hod)
        assert request.current_level == "rejected"
        assert request.approval_flow["level1"]["status"] == "approved"
        assert request.approval_flow["hod"]["status"] == "rejected"

    def test_rejected_request_is_closed(self, service, count_request, supervisor):
        service.reject_request(count_request.id, supervisor)
        with pytest.raises(AlreadyClosedError):
            service.reject_request(count_request.id, supervisor)


class TestEscalate:
    """Tests for skipping a stage after an SLA breach."""

    def test_escalate_skips_current_stage(self, service, count_request, audit):
        request = service.machine.escalate(count_request.id)

        assert request.current_level == "hod"
        step = request.approval_flow["level1"]
        assert step["status"] == "skipped"
        assert step["approved_by"] is None
        assert step["remarks"] == ESCALATION_REMARK
        assert "REQUEST_ESCALATED" in audit.actions()

    def test_escalate_never_completes(self, service, count_request, supervisor, hod):
        service.approve_request(count_request.id, supervisor)
        service.approve_request(count_request.id, hod)

        assert service.machine.escalate(count_request.id) is None
        assert service.get_request(count_request.id).current_level == "cfo"

    def test_escalate_closed_request_is_noop(self, service, count_request, supervisor):
        service.reject_request(count_request.id, supervisor)
        assert service.machine.escalate(count_request.id) is None

    def test_escalation_loses_to_human_approval(self, service, count_request, supervisor):
        """An escalation decided against a stale snapshot is dropped."""
        seen_level, seen_version = count_request.current_level, count_request.version
        service.approve_request(count_request.id, supervisor)

        assert service.machine.escalate(count_request.id, seen_level, seen_version) is None
        request = service.get_request(count_request.id)
        assert request.current_level == "hod"
        assert request.approval_flow["level1"]["status"] == "approved"


    def test_escalate_never_touches_a_transfer(self, service, transfer_request, supervisor):
        service.approve_request(transfer_request.id, supervisor)

        assert service.machine.escalate(transfer_request.id) is None
        step = service.get_request(transfer_request.id).approval_flow["level1"]
        assert step["status"] == "approved"
        assert step["approved_by"] == supervisor.actor_id


class TestSinks:
    """Tests for audit and notification fan-out."""

    def test_sink_failures_do_not_block(self, test_db, config, clock, count_request, supervisor):
        """A broken audit store or notifier never undoes a transition."""
        events = EventDispatcher(audit=FailingSink(), notifications=FailingSink())
        service = RequestService(test_db, config, clock, events)

        request = service.approve_request(count_request.id, supervisor)

        assert request.current_level == "hod"

    def test_stage_changes_are_notified(self, service, count_request, supervisor, notifications):
        service.approve_request(count_request.id, supervisor)
        assert [(e.from_level, e.to_level) for e in notifications.events] == [("level1", "hod")]

    def test_every_transition_is_audited(self, service, count_request, supervisor, audit):
        service.reject_request(count_request.id, supervisor)
        assert audit.actions() == ["REQUEST_CREATED", "REQUEST_REJECTED"]
