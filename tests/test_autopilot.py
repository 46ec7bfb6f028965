"""
Automation settings and autopilot runner tests
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models import AutopilotQuota, utcnow
from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.autopilot import AutopilotRunner
from app.services.change_control.errors import InvalidPayload, PolicyDenied, PreconditionFailed
from app.services.events import SETTINGS_UPDATED, bus


@pytest.fixture
def automation(db_session):
    return AutomationSettingsService(db_session)


@pytest.fixture
def runner(db_session, platform):
    return AutopilotRunner(db_session, platform)


@pytest.fixture
def autopilot_on(automation):
    def _enable(**fields):
        patch = {"autopilot_enabled": True, "max_daily_actions": 5}
        patch.update(fields)
        return automation.update("shop-1", patch)

    return _enable


class TestAutomationSettings:
    def test_defaults_created_on_first_read(self, automation):
        conf = automation.get("shop-1")

        assert conf.merchant_id == "shop-1"
        assert conf.global_autopilot_enabled is True
        assert conf.autopilot_enabled is False
        assert conf.autopilot_mode == "safe"
        assert conf.dry_run_mode is False
        assert conf.auto_publish_enabled is False
        assert conf.max_daily_actions == 10
        assert conf.enabled_action_types == ["optimize_seo"]
        assert automation.get("shop-1").id == conf.id

    def test_patch_only_touches_given_fields(self, automation):
        seen = []
        bus.subscribe(SETTINGS_UPDATED, seen.append)

        conf = automation.update("shop-1", {"autopilot_mode": "balanced", "max_daily_actions": 3})

        assert conf.autopilot_mode == "balanced"
        assert conf.max_daily_actions == 3
        assert conf.dry_run_mode is False
        assert seen == [{"merchant_id": "shop-1", "changes": {"autopilot_mode": "balanced", "max_daily_actions": 3}}]

    def test_enabled_action_types_are_deduplicated(self, automation):
        conf = automation.update("shop-1", {"enabled_action_types": ["fix_product", "optimize_seo", "fix_product"]})
        assert conf.enabled_action_types == ["fix_product", "optimize_seo"]

    @pytest.mark.parametrize("patch", [
        {"autopilot_mode": "reckless"},
        {"max_daily_actions": -1},
        {"enabled_action_types": ["delete_store"]},
        {"unknown_flag": True},
    ])
    def test_invalid_patch(self, automation, patch):
        with pytest.raises(InvalidPayload):
            automation.update("shop-1", patch)

    def test_usage_for_new_merchant(self, automation):
        usage = automation.usage("shop-1")
        assert usage["used"] == 0
        assert usage["limit"] == 10
        assert usage["remaining"] == 10


class TestTryAutopilot:
    def test_disabled_autopilot_leaves_record_pending(self, runner, store, make_record, platform):
        record_id = make_record()

        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(record_id)

        assert excinfo.value.violation_type == "autopilot_disabled"
        assert store.get(record_id).status == "pending"
        assert platform.calls == []

    def test_global_switch_wins(self, runner, autopilot_on, make_record):
        autopilot_on(global_autopilot_enabled=False)

        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(make_record())
        assert excinfo.value.violation_type == "global_disabled"

    def test_executes_allowed_record(self, runner, autopilot_on, store, make_record, automation, platform):
        autopilot_on()
        record_id = make_record()

        outcome = runner.try_autopilot(record_id)

        assert outcome.status == "completed"
        record = store.get(record_id)
        assert record.status == "completed"
        assert record.executed_by == "agent"
        assert record.counted_toward_daily_cap is True
        assert automation.usage("shop-1")["used"] == 1
        assert len(platform.calls) == 1

    def test_dry_run_mode(self, runner, autopilot_on, make_record, platform):
        autopilot_on(dry_run_mode=True)

        outcome = runner.try_autopilot(make_record())

        assert outcome.status == "dry_run"
        assert platform.calls == []

    def test_action_type_must_be_enabled(self, runner, autopilot_on, store, make_record):
        autopilot_on()
        record_id = make_record(
            action_type="fix_product",
            payload={"before": {"vendor": "Acme"}, "after": {"vendor": "ACME Goods"}},
        )

        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(record_id)
        assert excinfo.value.violation_type == "action_type_disabled"
        assert store.get(record_id).status == "pending"

    def test_risk_ceiling_by_mode(self, runner, autopilot_on, store, make_record):
        price_payload = {
            "before": {"variant_id": "v-1", "price": "24.99"},
            "after": {"variant_id": "v-1", "price": "22.99"},
        }
        autopilot_on(enabled_action_types=["adjust_price"])
        record_id = make_record(action_type="adjust_price", payload=price_payload)

        # price changes are at least medium risk
        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(record_id)
        assert excinfo.value.violation_type == "risk_ceiling"

        autopilot_on(autopilot_mode="balanced")
        assert runner.try_autopilot(record_id).status == "completed"

    def test_high_risk_needs_aggressive_mode(self, runner, autopilot_on, make_record):
        autopilot_on(autopilot_mode="balanced")
        record_id = make_record(estimated_impact={"expected_revenue": -750.0})

        with pytest.raises(PolicyDenied):
            runner.try_autopilot(record_id)

        autopilot_on(autopilot_mode="aggressive")
        assert runner.try_autopilot(record_id).status == "completed"

    def test_user_proposals_are_not_auto_approved(self, runner, autopilot_on, make_record):
        autopilot_on()
        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(make_record(executed_by="user"))
        assert excinfo.value.violation_type == "not_agent"

    def test_requires_pending(self, runner, autopilot_on, make_record):
        autopilot_on()
        record_id = make_record()
        runner.try_autopilot(record_id)

        with pytest.raises(PreconditionFailed):
            runner.try_autopilot(record_id)


class TestDailyCap:
    def test_sixth_action_is_denied(self, runner, autopilot_on, store, make_record, automation, platform):
        autopilot_on(max_daily_actions=5)
        ids = [make_record(entity_id=f"gid-{i}") for i in range(6)]

        for record_id in ids[:5]:
            assert runner.try_autopilot(record_id).status == "completed"

        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(ids[5])

        assert excinfo.value.violation_type == "daily_cap"
        sixth = store.get(ids[5])
        assert sixth.status == "pending"
        assert sixth.counted_toward_daily_cap is False
        assert automation.usage("shop-1")["used"] == 5
        assert len(platform.calls) == 5

    def test_cap_is_per_merchant(self, runner, autopilot_on, automation, make_record):
        autopilot_on(max_daily_actions=1)
        automation.update("shop-2", {"autopilot_enabled": True, "max_daily_actions": 1})

        assert runner.try_autopilot(make_record()).status == "completed"
        assert runner.try_autopilot(make_record(merchant_id="shop-2")).status == "completed"

    def test_window_restarts_after_a_day(self, runner, autopilot_on, store, make_record, automation, db_session):
        autopilot_on(max_daily_actions=1)
        assert runner.try_autopilot(make_record()).status == "completed"

        blocked = make_record()
        with pytest.raises(PolicyDenied):
            runner.try_autopilot(blocked)

        db_session.execute(
            update(AutopilotQuota)
            .where(AutopilotQuota.merchant_id == "shop-1")
            .values(window_started_at=utcnow() - timedelta(hours=25))
        )
        db_session.commit()

        assert runner.try_autopilot(blocked).status == "completed"
        assert automation.usage("shop-1")["used"] == 1

    def test_zero_limit_denies_everything(self, runner, autopilot_on, make_record):
        autopilot_on(max_daily_actions=0)
        with pytest.raises(PolicyDenied) as excinfo:
            runner.try_autopilot(make_record())
        assert excinfo.value.violation_type == "daily_cap"


class TestTick:
    def test_tick_processes_oldest_first_until_cap(self, runner, autopilot_on, store, make_record):
        autopilot_on(max_daily_actions=2)
        ids = [make_record(entity_id=f"gid-{i}") for i in range(3)]
        make_record(executed_by="user")

        summary = runner.tick("shop-1")

        assert summary.examined == 3
        assert summary.executed == 2
        assert summary.denied == 1
        assert summary.failed == 0
        assert sorted(store.get(i).status for i in ids) == ["completed", "completed", "pending"]

    def test_tick_counts_failed_executions(self, runner, autopilot_on, make_record, platform):
        autopilot_on()
        make_record(entity_id="gid-ok")
        make_record(entity_id="gid-bad")
        platform.fail_for.add("gid-bad")

        summary = runner.tick("shop-1")

        assert summary.executed == 1
        assert summary.failed == 1

    def test_tick_with_autopilot_off(self, runner, make_record, platform):
        make_record()
        summary = runner.tick("shop-1")

        assert summary.examined == 1
        assert summary.denied == 1
        assert platform.calls == []
