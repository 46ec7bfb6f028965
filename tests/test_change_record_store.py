"""
ChangeRecord store tests

Creation, the transition table, compare-and-swap updates, listing and
derived counts.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models import ChangeRecord, utcnow
from app.services.change_control.approval import ApprovalGate
from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.errors import InvalidPayload, InvalidTransition, NotFound, PreconditionFailed
from app.services.change_control.store import TRANSITIONS, can_transition
from app.services.events import RECORD_CREATED, STATUS_CHANGED, bus


class TestCreate:
    def test_create_returns_pending_record(self, store, make_record):
        record_id = make_record()
        record = store.get(record_id)

        assert record.status == "pending"
        assert record.merchant_id == "shop-1"
        assert record.entity_type == "product"
        assert record.executed_by == "agent"
        assert record.payload == {"before": {"title": "Old Title"}, "after": {"title": "New Title"}}
        assert record.estimated_impact == {"expected_revenue": 40.0, "confidence": "high"}
        assert record.completed_at is None
        assert record.rolled_back_at is None

    def test_create_publishes_event(self, make_record):
        seen = []
        bus.subscribe(RECORD_CREATED, seen.append)

        record_id = make_record()

        assert len(seen) == 1
        assert seen[0]["record_id"] == str(record_id)
        assert seen[0]["to_status"] == "pending"

    def test_create_rejects_unknown_payload_field(self, make_record):
        with pytest.raises(InvalidPayload):
            make_record(payload={"before": {"title": "a"}, "after": {"price": 10}})

    def test_create_rejects_empty_before(self, make_record):
        with pytest.raises(InvalidPayload):
            make_record(payload={"before": {}, "after": {"title": "New"}})

    def test_create_rejects_terminal_status(self, make_record):
        with pytest.raises(InvalidPayload):
            make_record(status="completed")

    def test_create_allows_running_for_decision_process(self, store, make_record):
        record = store.get(make_record(status="running"))
        assert record.status == "running"
        assert record.counted_toward_daily_cap is True

    def test_running_agent_record_over_risk_ceiling_waits_for_approval(self, store, make_record, platform):
        record_id = make_record(
            status="running",
            action_type="adjust_price",
            entity_id="gid-1001",
            payload={
                "before": {"variant_id": "v-1", "price": "24.99"},
                "after": {"variant_id": "v-1", "price": "19.90"},
            },
        )

        record = store.get(record_id)
        assert record.status == "pending"
        assert record.counted_toward_daily_cap is False
        assert record.result["autopilot_denied"]["violation_type"] == "risk_ceiling"

        outcome = ApprovalGate(store.db, platform).approve(record_id)
        assert outcome.status == "completed"

    def test_running_agent_record_at_cap_waits_for_approval(self, store, make_record):
        automation = AutomationSettingsService(store.db)
        automation.update("shop-1", {"max_daily_actions": 1})
        first = store.get(make_record(status="running"))
        second = store.get(make_record(status="running", entity_id="gid-2002"))

        assert first.status == "running"
        assert second.status == "pending"
        assert second.result["autopilot_denied"]["violation_type"] == "daily_cap"
        assert automation.usage("shop-1")["used"] == 1
        assert len(store.list(merchant_id="shop-1")) == 2

    def test_price_payload_is_normalised(self, store, make_record):
        record_id = make_record(
            action_type="adjust_price",
            payload={
                "before": {"variant_id": "v-1", "price": "24.99"},
                "after": {"variant_id": "v-1", "price": "19.90"},
            },
        )
        payload = store.get(record_id).payload
        assert payload["before"]["price"] == "24.99"
        assert payload["after"]["price"] == "19.90"


class TestGet:
    def test_unknown_id_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.get("00000000-0000-0000-0000-000000000000")

    def test_malformed_id_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.get("not-a-uuid")


class TestTransitions:
    def test_transition_table(self):
        assert can_transition("pending", "running")
        assert can_transition("pending", "rejected")
        assert can_transition("running", "dry_run")
        assert can_transition("dry_run", "rolled_back")
        assert not can_transition("pending", "completed")
        assert not can_transition("failed", "rolled_back")
        assert not can_transition("rolled_back", "completed")
        assert "rejected" not in TRANSITIONS
        assert "failed" not in TRANSITIONS

    def test_full_lifecycle_sets_timestamps_once(self, store, make_record):
        record_id = make_record()

        store.update_status(record_id, "running")
        completed = store.update_status(record_id, "completed", {"published_to_shopify": True})
        assert completed.completed_at is not None
        assert completed.published_to_shopify is True

        rolled_back = store.update_status(record_id, "rolled_back")
        assert rolled_back.status == "rolled_back"
        assert rolled_back.rolled_back_at is not None
        assert rolled_back.completed_at == completed.completed_at

    def test_invalid_edge_leaves_record_untouched(self, store, make_record):
        record_id = make_record()

        with pytest.raises(InvalidTransition) as excinfo:
            store.update_status(record_id, "completed", {"result": {"applied": True}})

        assert excinfo.value.current == "pending"
        assert excinfo.value.requested == "completed"
        record = store.get(record_id)
        assert record.status == "pending"
        assert record.result is None

    def test_terminal_status_cannot_move(self, store, make_record):
        record_id = make_record()
        store.update_status(record_id, "rejected")

        for target in ("pending", "running", "completed", "rolled_back"):
            with pytest.raises(InvalidTransition):
                store.update_status(record_id, target)

    def test_expected_status_mismatch(self, store, make_record):
        record_id = make_record()
        store.update_status(record_id, "running")

        with pytest.raises(InvalidTransition):
            store.update_status(record_id, "rejected", expected="pending")
        assert store.get(record_id).status == "running"

    def test_compare_and_swap_detects_stale_status(self, store, make_record, db_session):
        record_id = make_record()
        store.get(record_id)

        # another writer moves the record behind the store's back
        db_session.execute(
            update(ChangeRecord).where(ChangeRecord.id == record_id).values(status="rejected")
        )
        db_session.commit()

        with pytest.raises(InvalidTransition):
            store.update_status(record_id, "running", expected="pending")
        assert store.get(record_id).status == "rejected"

    def test_protected_fields_rejected(self, store, make_record):
        record_id = make_record()
        with pytest.raises(ValueError):
            store.update_status(record_id, "running", {"payload": {"before": {}, "after": {}}})
        with pytest.raises(ValueError):
            store.update_status(record_id, "running", {"estimated_impact": {"expected_revenue": 1}})
        assert store.get(record_id).status == "pending"

    def test_status_change_event(self, store, make_record):
        seen = []
        bus.subscribe(STATUS_CHANGED, seen.append)
        record_id = make_record()

        store.update_status(record_id, "running")

        assert seen == [{
            "record_id": str(record_id),
            "merchant_id": "shop-1",
            "action_type": "optimize_seo",
            "executed_by": "agent",
            "from_status": "pending",
            "to_status": "running",
            "reverts_id": None,
        }]

    def test_failing_subscriber_does_not_break_transition(self, store, make_record):
        def broken(data):
            raise RuntimeError("notification service down")

        bus.subscribe(STATUS_CHANGED, broken)
        record_id = make_record()

        record = store.update_status(record_id, "running")
        assert record.status == "running"


class TestList:
    def test_filters(self, store, make_record):
        seo = make_record(entity_id="p-1")
        price = make_record(
            action_type="adjust_price",
            entity_id="p-2",
            payload={"before": {"variant_id": "v", "price": 10}, "after": {"variant_id": "v", "price": 9}},
        )
        make_record(merchant_id="shop-2")
        store.update_status(price, "rejected")

        assert {r.id for r in store.list(merchant_id="shop-1")} == {seo, price}
        assert [r.id for r in store.list(merchant_id="shop-1", status="pending")] == [seo]
        assert [r.id for r in store.list(merchant_id="shop-1", status=["rejected", "failed"])] == [price]
        assert [r.id for r in store.list(merchant_id="shop-1", action_type="adjust_price")] == [price]
        assert [r.id for r in store.list(merchant_id="shop-1", entity_id="p-1")] == [seo]
        assert len(store.list()) == 3

    def test_ordering_and_paging(self, store, make_record, db_session):
        ids = [make_record() for _ in range(3)]
        base = utcnow() - timedelta(hours=1)
        for i, record_id in enumerate(ids):
            db_session.execute(
                update(ChangeRecord)
                .where(ChangeRecord.id == record_id)
                .values(created_at=base + timedelta(minutes=i))
            )
        db_session.commit()

        assert [r.id for r in store.list(merchant_id="shop-1")] == list(reversed(ids))
        assert [r.id for r in store.list(merchant_id="shop-1", oldest_first=True)] == ids
        assert [r.id for r in store.list(merchant_id="shop-1", limit=1, offset=1)] == [ids[1]]


class TestCounts:
    def test_counts_are_derived_and_invalidated(self, store, make_record):
        first = make_record()
        second = make_record()
        make_record()

        assert store.counts("shop-1") == {
            "pending": 3, "running": 0, "applied": 0, "dry_run": 0,
            "failed": 0, "rolled_back": 0, "rejected": 0,
        }

        store.update_status(first, "running")
        store.update_status(first, "completed")
        store.update_status(second, "rejected")

        counts = store.counts("shop-1")
        assert counts["pending"] == 1
        assert counts["applied"] == 1
        assert counts["rejected"] == 1

    def test_counts_are_per_merchant(self, store, make_record):
        make_record(merchant_id="shop-2")
        assert store.counts("shop-1")["pending"] == 0
        assert store.counts("shop-2")["pending"] == 1


class TestActualImpact:
    def test_record_actual_impact_keeps_estimate(self, store, make_record):
        record_id = make_record()
        store.update_status(record_id, "running")
        store.update_status(record_id, "completed")

        record = store.record_actual_impact(record_id, {"revenue_delta": 55.5})

        assert record.actual_impact == {"revenue_delta": 55.5, "status": "measured"}
        assert record.estimated_impact == {"expected_revenue": 40.0, "confidence": "high"}

    def test_actual_impact_requires_applied_change(self, store, make_record):
        record_id = make_record()
        with pytest.raises(PreconditionFailed):
            store.record_actual_impact(record_id, {"revenue_delta": 1.0})

    def test_actual_impact_is_validated(self, store, make_record):
        record_id = make_record()
        with pytest.raises(InvalidPayload):
            store.record_actual_impact(record_id, {"status": "measured"})
