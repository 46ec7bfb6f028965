"""
Rollback Engine

Reverts an applied (or dry-run) change by re-applying its `before`
snapshot, then marks the original `rolled_back` and records a corrective
change pointing back at it, both in one transaction.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from app.services.change_control.errors import (
    ChangeControlError,
    ExternalMutationFailed,
    NotRollbackable,
)
from app.services.change_control.platform import StorePlatform
from app.services.change_control.store import ROLLBACKABLE_STATUSES, ChangeRecordStore
from app.services.events import RECORD_CREATED, EventBus, bus

logger = logging.getLogger(__name__)


@dataclass
class RollbackOutcome:
    record_id: uuid.UUID
    corrective_id: uuid.UUID
    status: str = "rolled_back"


@dataclass
class BulkRollbackItem:
    record_id: uuid.UUID
    success: bool
    corrective_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


@dataclass
class BulkRollbackOutcome:
    results: list[BulkRollbackItem] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded


class RollbackEngine:
    def __init__(self, db: Session, platform: StorePlatform, event_bus: EventBus = bus):
        self.db = db
        self.platform = platform
        self.event_bus = event_bus
        self.store = ChangeRecordStore(db, event_bus=event_bus)

    def rollback(self, record_id: Any) -> RollbackOutcome:
        record = self.store.get(record_id)
        if record.reverts_id is not None:
            raise NotRollbackable(
                record.id,
                record.status,
                f"Change record {record.id} is itself a rollback of {record.reverts_id}",
            )
        if record.status not in ROLLBACKABLE_STATUSES:
            raise NotRollbackable(record.id, record.status)

        record = self.store.claim(record.id, ROLLBACKABLE_STATUSES, "roll back")
        previous = record.status
        before = record.payload.get("before", {})
        try:
            self.platform.apply_content(record.entity_id, record.action_type, before)
        except ExternalMutationFailed:
            logger.error(f"[Rollback] Store rejected rollback of {record.id}")
            self.store.release(record.id)
            raise
        except Exception as e:
            logger.error(f"[Rollback] Rollback of {record.id} failed: {e}")
            self.store.release(record.id)
            raise ExternalMutationFailed(
                f"Failed to restore {record.entity_id or record.id}: {e}",
                entity_id=record.entity_id,
            ) from e

        self.store.update_status(record.id, "rolled_back", {"claimed_at": None}, expected=previous, commit=False)
        corrective = self.store.add_corrective(record)
        self.db.commit()

        original = self.store.get(record.id)
        self.store.notify_transition(original, previous)
        self.event_bus.publish(RECORD_CREATED, {
            "record_id": str(corrective.id),
            "merchant_id": corrective.merchant_id,
            "action_type": corrective.action_type,
            "executed_by": corrective.executed_by,
            "from_status": None,
            "to_status": corrective.status,
            "reverts_id": str(original.id),
        })
        logger.info(f"[Rollback] Rolled back {original.id} (corrective {corrective.id})")
        return RollbackOutcome(record_id=original.id, corrective_id=corrective.id)

    def bulk_rollback(self, merchant_id: str, record_ids: Optional[Iterable[Any]] = None) -> BulkRollbackOutcome:
        """
        Roll back every rollbackable change of a merchant (or the given
        subset), one at a time. A failure on one record does not stop the
        rest.
        """
        snapshot = [
            r for r in self.store.list(merchant_id=merchant_id, status=ROLLBACKABLE_STATUSES, limit=None)
            if r.reverts_id is None
        ]
        if record_ids is not None:
            wanted = {str(rid) for rid in record_ids}
            snapshot = [r for r in snapshot if str(r.id) in wanted]

        outcome = BulkRollbackOutcome()
        for record in snapshot:
            try:
                result = self.rollback(record.id)
            except ChangeControlError as e:
                logger.warning(f"[Rollback] Bulk rollback skipped {record.id}: {e.message}")
                outcome.results.append(BulkRollbackItem(record.id, False, error=e.message))
                continue
            outcome.results.append(BulkRollbackItem(record.id, True, corrective_id=result.corrective_id))

        logger.info(
            f"[Rollback] Bulk rollback for {merchant_id}: "
            f"{outcome.succeeded}/{outcome.total} succeeded"
        )
        return outcome
