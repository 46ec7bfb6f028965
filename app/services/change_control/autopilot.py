"""
Autopilot runner

Approves and executes pending agent proposals without a human, within the
merchant's automation policy. Reserving the daily slot and moving the record
to `running` commit together, so a denied proposal stays `pending` and
consumes nothing.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.errors import InvalidTransition, PolicyDenied, PreconditionFailed
from app.services.change_control.executor import ExecutionEngine, ExecutionOutcome
from app.services.change_control.platform import StorePlatform
from app.services.change_control.store import ChangeRecordStore
from app.services.events import EventBus, bus
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class AutopilotTick:
    examined: int = 0
    executed: int = 0
    denied: int = 0
    failed: int = 0


class AutopilotRunner:
    def __init__(self, db: Session, platform: StorePlatform, event_bus: EventBus = bus):
        self.db = db
        self.store = ChangeRecordStore(db, event_bus=event_bus)
        self.automation = AutomationSettingsService(db, event_bus=event_bus)
        self.engine = ExecutionEngine(db, platform, event_bus=event_bus)

    def try_autopilot(self, record_id: Any) -> ExecutionOutcome:
        record = self.store.get(record_id)
        if record.status != "pending":
            raise PreconditionFailed(record.id, record.status, "pending", "auto-approve")
        if record.executed_by != "agent":
            raise PolicyDenied(record.id, "Only agent proposals can run on autopilot", "not_agent")

        conf = self.automation.get(record.merchant_id)
        tier = self.automation.authorize_unattended(record, conf)

        if not record.counted_toward_daily_cap:
            self.automation.reserve_daily_slot(record.merchant_id, record.id, conf.max_daily_actions)
        try:
            self.store.update_status(record.id, "running", expected="pending", commit=False)
        except InvalidTransition as e:
            # releases the slot reserved above
            self.db.rollback()
            raise PreconditionFailed(record.id, e.current, "pending", "auto-approve") from e
        self.db.commit()

        record = self.store.get(record.id)
        self.store.notify_transition(record, "pending")
        logger.info(f"[Autopilot] Auto-approved {record.action_type} change {record.id} (risk={tier})")
        return self.engine.execute(record.id)

    def tick(self, merchant_id: str, limit: Optional[int] = None) -> AutopilotTick:
        """Run the autopilot once over the merchant's pending agent proposals, oldest first."""
        batch = self.store.list(
            merchant_id=merchant_id,
            status="pending",
            executed_by="agent",
            limit=limit or settings.autopilot_tick_batch_size,
            oldest_first=True,
        )
        summary = AutopilotTick(examined=len(batch))
        for record in batch:
            try:
                outcome = self.try_autopilot(record.id)
            except PolicyDenied as e:
                logger.debug(f"[Autopilot] {record.id} denied: {e.message}")
                summary.denied += 1
                continue
            except PreconditionFailed as e:
                # picked up by someone else since the batch was read
                logger.debug(f"[Autopilot] {record.id} skipped: {e.message}")
                continue
            if outcome.succeeded:
                summary.executed += 1
            else:
                summary.failed += 1

        logger.info(
            f"[Autopilot] Tick for {merchant_id}: examined={summary.examined} "
            f"executed={summary.executed} denied={summary.denied} failed={summary.failed}"
        )
        return summary
