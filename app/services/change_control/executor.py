"""
Execution Engine

Applies a `running` change either for real, through the store platform, or
as a dry run. The terminal status is written only after the platform call
returns; a failing call leaves the record `failed` with the error in
`result` and is reported as an outcome rather than raised. Concurrent
executes of one record are serialized by the record claim.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.errors import PreconditionFailed
from app.services.change_control.platform import StorePlatform
from app.services.change_control.store import ChangeRecordStore
from app.services.events import EventBus, bus

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    record_id: uuid.UUID
    status: str
    published_to_shopify: bool
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("completed", "dry_run")


class ExecutionEngine:
    def __init__(self, db: Session, platform: StorePlatform, event_bus: EventBus = bus):
        self.db = db
        self.platform = platform
        self.store = ChangeRecordStore(db, event_bus=event_bus)
        self.automation = AutomationSettingsService(db, event_bus=event_bus)

    def execute(self, record_id: Any) -> ExecutionOutcome:
        record = self.store.get(record_id)
        if record.status != "running":
            raise PreconditionFailed(record.id, record.status, "running", "execute")

        # one caller per record gets past this point
        record = self.store.claim(record.id, ("running",), "execute")
        try:
            conf = self.automation.get(record.merchant_id)
        except Exception:
            self.store.release(record.id)
            raise

        if conf.dry_run_mode or record.dry_run:
            return self._simulate(record)
        return self._apply(record)

    def _simulate(self, record) -> ExecutionOutcome:
        result = {
            "simulated": True,
            "would_apply": record.payload.get("after", {}),
            "estimated_impact": record.estimated_impact,
        }
        self.store.update_status(
            record.id,
            "dry_run",
            {"result": result, "dry_run": True, "claimed_at": None},
            expected="running",
        )
        logger.info(f"[Executor] Dry run of {record.action_type} change {record.id}")
        return ExecutionOutcome(record.id, "dry_run", False)

    def _apply(self, record) -> ExecutionOutcome:
        try:
            response = self.platform.apply_content(
                record.entity_id,
                record.action_type,
                record.payload.get("after", {}),
            )
        except Exception as e:
            logger.error(f"[Executor] {record.action_type} change {record.id} failed: {e}")
            result = {"error": str(e), "error_type": type(e).__name__}
            status_code = getattr(e, "status_code", None)
            if status_code is not None:
                result["status_code"] = status_code
            self.store.update_status(record.id, "failed", {"result": result, "claimed_at": None}, expected="running")
            return ExecutionOutcome(record.id, "failed", False, str(e))

        self.store.update_status(
            record.id,
            "completed",
            {
                "result": {"applied": True, "response": response or {}},
                "published_to_shopify": True,
                "claimed_at": None,
            },
            expected="running",
        )
        logger.info(f"[Executor] Applied {record.action_type} change {record.id} to {record.entity_id}")
        return ExecutionOutcome(record.id, "completed", True)
