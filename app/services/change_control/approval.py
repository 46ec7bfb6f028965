"""
Approval Gate

Human decisions on `pending` proposals. Approval hands the record to the
Execution Engine immediately; a manual approval is a user decision and is
not subject to the autopilot policy.
"""
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.models import ChangeRecord
from app.services.change_control.errors import InvalidTransition, PreconditionFailed
from app.services.change_control.executor import ExecutionEngine, ExecutionOutcome
from app.services.change_control.platform import StorePlatform
from app.services.change_control.store import ChangeRecordStore
from app.services.events import EventBus, bus

logger = logging.getLogger(__name__)


class ApprovalGate:
    def __init__(self, db: Session, platform: StorePlatform, event_bus: EventBus = bus):
        self.db = db
        self.store = ChangeRecordStore(db, event_bus=event_bus)
        self.engine = ExecutionEngine(db, platform, event_bus=event_bus)

    def approve(self, record_id: Any) -> ExecutionOutcome:
        record = self.store.get(record_id)
        if record.status != "pending":
            raise PreconditionFailed(record.id, record.status, "pending", "approve")

        try:
            self.store.update_status(record.id, "running", {"executed_by": "user"}, expected="pending")
        except InvalidTransition as e:
            raise PreconditionFailed(record.id, e.current, "pending", "approve") from e

        logger.info(f"[Approval] Approved change {record.id}")
        return self.engine.execute(record.id)

    def reject(self, record_id: Any, reason: Optional[str] = None) -> ChangeRecord:
        record = self.store.get(record_id)
        if record.status != "pending":
            raise PreconditionFailed(record.id, record.status, "pending", "reject")

        result = {"rejected": True}
        if reason:
            result["reason"] = reason
        try:
            record = self.store.update_status(record.id, "rejected", {"result": result}, expected="pending")
        except InvalidTransition as e:
            raise PreconditionFailed(record.id, e.current, "pending", "reject") from e

        logger.info(f"[Approval] Rejected change {record.id}: {reason or 'no reason given'}")
        return record
