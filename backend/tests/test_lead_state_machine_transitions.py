"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Lead State Machine Transition Testing (Direct Python Tests)     ║
║                                                                              ║
║  1. Transition map (pipeline + terminal states)                              ║
║  2. Vendor transitions validated, admin override limits                      ║
║  3. Refund branch transitions                                                ║
║  4. Helpers: history entries, notes, completion percentage                   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import pytest

from services.lead_state_machine import (
    VALID_LEAD_TRANSITIONS,
    VALID_REFUND_TRANSITIONS,
    LeadTransitionError,
    validate_lead_transition,
    validate_admin_status,
    validate_refund_transition,
    history_entry,
    build_note,
    completion_percentage,
    status_timestamp_update,
)
from models import VALID_LEAD_STATUSES


class TestTransitionMap:
    """VALID_LEAD_TRANSITIONS covers every status"""

    def test_every_status_has_an_entry(self):
        assert set(VALID_LEAD_TRANSITIONS) == set(VALID_LEAD_STATUSES)
        print(f"✅ {len(VALID_LEAD_TRANSITIONS)} statuses in the transition map")

    def test_terminal_statuses(self):
        for status in ("not_interested", "converted", "cancelled"):
            assert VALID_LEAD_TRANSITIONS[status] == [], f"{status} should be terminal"
        print("✅ not_interested / converted / cancelled are terminal")

    def test_taken_only_from_offer_statuses(self):
        sources = [s for s, nxt in VALID_LEAD_TRANSITIONS.items() if "taken" in nxt]
        assert sorted(sources) == ["assigned", "available"]
        print(f"✅ taken reachable from: {sources}")

    def test_completed_can_still_convert(self):
        assert VALID_LEAD_TRANSITIONS["completed"] == ["converted"]
        print("✅ completed -> converted allowed")


class TestVendorTransitions:
    """validate_lead_transition raises on anything off the map"""

    def test_pipeline_forward_moves(self):
        path = ["taken", "contacted", "interested", "scheduled", "in_progress", "completed", "converted"]
        for current, nxt in zip(path, path[1:]):
            assert validate_lead_transition("L1", current, nxt) is True
        print("✅ Full pipeline taken -> converted is valid")

    def test_cannot_skip_contacted(self):
        with pytest.raises(LeadTransitionError) as exc_info:
            validate_lead_transition("L1", "taken", "scheduled")
        assert "taken" in str(exc_info.value)
        assert "scheduled" in str(exc_info.value)
        print(f"✅ Blocked: {exc_info.value}")

    def test_cannot_leave_terminal(self):
        with pytest.raises(LeadTransitionError):
            validate_lead_transition("L1", "cancelled", "contacted")
        print("✅ cancelled cannot be reopened by a vendor")

    def test_cannot_go_back_to_pending(self):
        with pytest.raises(LeadTransitionError):
            validate_lead_transition("L1", "contacted", "pending")
        print("✅ contacted -> pending blocked")


class TestAdminOverride:

    def test_admin_may_force_any_known_status(self):
        for status in VALID_LEAD_STATUSES:
            if status == "taken":
                continue
            assert validate_admin_status("L1", status) is True
        print("✅ Admin may force every status except taken")

    def test_admin_cannot_set_taken(self):
        with pytest.raises(LeadTransitionError) as exc_info:
            validate_admin_status("L1", "taken")
        assert "markTaken" in str(exc_info.value)
        print(f"✅ Blocked: {exc_info.value}")

    def test_unknown_status_rejected(self):
        with pytest.raises(LeadTransitionError):
            validate_admin_status("L1", "archived")
        print("✅ Unknown status rejected")


class TestRefundTransitions:

    def test_refund_map(self):
        assert VALID_REFUND_TRANSITIONS[None] == ["pending"]
        assert sorted(VALID_REFUND_TRANSITIONS["pending"]) == ["approved", "rejected"]
        assert VALID_REFUND_TRANSITIONS["approved"] == []
        assert VALID_REFUND_TRANSITIONS["rejected"] == []
        print("✅ Refund map: None -> pending -> approved | rejected")

    def test_request_once(self):
        assert validate_refund_transition("L1", None, "pending") is True
        with pytest.raises(LeadTransitionError) as exc_info:
            validate_refund_transition("L1", "pending", "pending")
        assert "already 'pending'" in str(exc_info.value)
        print("✅ A second refund request is rejected")

    def test_process_without_request(self):
        with pytest.raises(LeadTransitionError) as exc_info:
            validate_refund_transition("L1", None, "approved")
        assert "No refund request" in str(exc_info.value)
        print("✅ Cannot approve a refund nobody asked for")

    def test_processed_refund_is_final(self):
        with pytest.raises(LeadTransitionError):
            validate_refund_transition("L1", "approved", "rejected")
        print("✅ approved refund cannot be rejected afterwards")


class TestHelpers:

    def test_history_entry_shape(self):
        entry = history_entry("taken", "contacted", {"id": "v1", "type": "vendor"})
        assert entry["from_status"] == "taken"
        assert entry["to_status"] == "contacted"
        assert entry["changed_by"] == "v1"
        assert entry["changed_by_type"] == "vendor"
        assert entry["reason"] == "Status updated to contacted"
        assert entry["timestamp"]
        print(f"✅ History entry: {entry}")

    def test_history_entry_defaults_to_system(self):
        entry = history_entry(None, "pending", {}, "Lead created from website")
        assert entry["changed_by"] == "system"
        assert entry["changed_by_type"] == "system"
        assert entry["reason"] == "Lead created from website"
        print("✅ Missing actor recorded as system")

    def test_build_note_strips_content(self):
        note = build_note("  Called, no answer  ", {"id": "v1", "type": "vendor", "name": "Sharma"}, "call")
        assert note["content"] == "Called, no answer"
        assert note["type"] == "call"
        assert note["created_by_name"] == "Sharma"
        assert note["id"]
        print("✅ Note built")

    def test_completion_percentage(self):
        assert completion_percentage("taken") == 17
        assert completion_percentage("scheduled") == 67
        assert completion_percentage("completed") == 100
        assert completion_percentage("cancelled") == 0
        assert completion_percentage("pending") == 0
        print("✅ Completion percentage follows the pipeline")

    def test_status_timestamp_fields(self):
        assert status_timestamp_update("contacted", "T") == {"contacted_at": "T"}
        assert status_timestamp_update("converted", "T") == {"converted_at": "T"}
        assert status_timestamp_update("in_progress", "T") == {}
        print("✅ Status timestamps")
