"""
ChangeRecord Store

Persists change records and owns the status state machine. Every status
change goes through `update_status`, which validates the edge against
TRANSITIONS and applies it with a compare-and-swap UPDATE so that two
writers racing on the same record can never both win.
"""
import logging
import uuid
from datetime import timedelta
from typing import Any, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.models import ChangeRecord, utcnow
from app.schemas.change_record import ActualImpact, ChangeRecordCreate
from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.errors import (
    InvalidPayload,
    InvalidTransition,
    NotFound,
    PolicyDenied,
    PreconditionFailed,
)
from app.services.change_control.stats import get_counts, invalidate_counts
from app.services.events import RECORD_CREATED, STATUS_CHANGED, EventBus, bus
from app.settings import settings as app_settings

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "rejected"}),
    "running": frozenset({"completed", "dry_run", "failed"}),
    "completed": frozenset({"rolled_back"}),
    "dry_run": frozenset({"rolled_back"}),
}

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "dry_run", "failed"})
ROLLBACKABLE_STATUSES = frozenset({"completed", "dry_run"})

# never writable through update_status
_PROTECTED_FIELDS = frozenset({
    "id",
    "merchant_id",
    "status",
    "payload",
    "estimated_impact",
    "created_at",
    "completed_at",
    "rolled_back_at",
})


def can_transition(current: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current, frozenset())


def _as_uuid(record_id: Any) -> uuid.UUID:
    if isinstance(record_id, uuid.UUID):
        return record_id
    try:
        return uuid.UUID(str(record_id))
    except (TypeError, ValueError):
        raise NotFound(record_id)


class ChangeRecordStore:
    def __init__(self, db: Session, event_bus: EventBus = bus):
        self.db = db
        self.event_bus = event_bus

    def create(self, data: ChangeRecordCreate | dict, merchant_id: str) -> uuid.UUID:
        """
        Insert a new proposal. Only `pending` and `running` are valid entry
        statuses; `running` is reserved for the decision process acting
        under policy. An agent record entering as `running` takes its
        autopilot slot in the same transaction as the insert, and is stored
        as `pending` instead when the policy denies it.
        """
        if not isinstance(data, ChangeRecordCreate):
            try:
                data = ChangeRecordCreate.model_validate(data)
            except ValidationError as e:
                raise InvalidPayload(
                    "Invalid change record",
                    action_type=data.get("action_type") if isinstance(data, dict) else None,
                    errors=e.errors(include_url=False, include_context=False, include_input=False),
                ) from e

        if data.status == "running" and data.executed_by == "agent":
            record = self._admit_running_agent(data, merchant_id)
        else:
            record = self._new_record(data, merchant_id)
            self.db.add(record)
        self.db.commit()

        logger.info(
            f"[ChangeStore] Created {record.action_type} change {record.id} "
            f"(merchant={merchant_id}, status={record.status}, by={record.executed_by})"
        )
        invalidate_counts(merchant_id)
        self.event_bus.publish(RECORD_CREATED, self._event_data(record, None, record.status))
        return record.id

    def _admit_running_agent(self, data: ChangeRecordCreate, merchant_id: str) -> ChangeRecord:
        automation = AutomationSettingsService(self.db, event_bus=self.event_bus)
        # both may commit, so they run before the insert is staged
        conf = automation.get(merchant_id)
        automation.ensure_quota(merchant_id)

        record = self._new_record(data, merchant_id)
        try:
            automation.check_risk(record, conf)
            self.db.add(record)
            self.db.flush()
            automation.reserve_daily_slot(merchant_id, record.id, conf.max_daily_actions)
        except PolicyDenied as e:
            self.db.rollback()
            logger.info(f"[ChangeStore] Autopilot denied {data.action_type} proposal, queued for approval: {e.message}")
            record = self._new_record(data, merchant_id, status="pending")
            record.result = {
                "autopilot_denied": {"violation_type": e.violation_type, "reason": e.message},
            }
            self.db.add(record)
        return record

    @staticmethod
    def _new_record(data: ChangeRecordCreate, merchant_id: str, status: Optional[str] = None) -> ChangeRecord:
        return ChangeRecord(
            id=uuid.uuid4(),
            merchant_id=merchant_id,
            action_type=data.action_type,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            status=status or data.status,
            decision_reason=data.decision_reason,
            rule_id=data.rule_id,
            payload=data.payload,
            estimated_impact=data.estimated_impact.model_dump(exclude_none=True) if data.estimated_impact else None,
            executed_by=data.executed_by,
            dry_run=data.dry_run,
            published_to_shopify=False,
            counted_toward_daily_cap=False,
        )

    def get(self, record_id: Any) -> ChangeRecord:
        rid = _as_uuid(record_id)
        stmt = select(ChangeRecord).where(ChangeRecord.id == rid).execution_options(populate_existing=True)
        record = self.db.scalars(stmt).first()
        if record is None:
            raise NotFound(record_id)
        return record

    def list(
        self,
        merchant_id: Optional[str] = None,
        status: str | Iterable[str] | None = None,
        action_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        executed_by: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> list[ChangeRecord]:
        stmt = select(ChangeRecord)
        if merchant_id is not None:
            stmt = stmt.where(ChangeRecord.merchant_id == merchant_id)
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            stmt = stmt.where(ChangeRecord.status.in_(statuses))
        if action_type:
            stmt = stmt.where(ChangeRecord.action_type == action_type)
        if entity_id:
            stmt = stmt.where(ChangeRecord.entity_id == entity_id)
        if executed_by:
            stmt = stmt.where(ChangeRecord.executed_by == executed_by)

        if oldest_first:
            stmt = stmt.order_by(ChangeRecord.created_at.asc(), ChangeRecord.id.asc())
        else:
            stmt = stmt.order_by(ChangeRecord.created_at.desc(), ChangeRecord.id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt.execution_options(populate_existing=True)).all())

    def update_status(
        self,
        record_id: Any,
        new_status: str,
        fields: Optional[dict[str, Any]] = None,
        expected: Optional[str] = None,
        commit: bool = True,
    ) -> ChangeRecord:
        """
        Move a record along one edge of the state machine.

        Args:
            record_id: record to update
            new_status: target status
            fields: extra columns written in the same UPDATE (result, flags)
            expected: status the caller believes the record is in
            commit: when False the caller commits and then calls
                notify_transition itself

        Raises:
            InvalidTransition: the edge is not allowed, or the stored status
                changed before the UPDATE landed
        """
        fields = dict(fields or {})
        protected = _PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Fields cannot be changed through a status update: {sorted(protected)}")

        record = self.get(record_id)
        current = record.status
        if expected is not None and current != expected:
            raise InvalidTransition(record.id, current, new_status)
        if not can_transition(current, new_status):
            raise InvalidTransition(record.id, current, new_status)

        now = utcnow()
        values = {**fields, "status": new_status, "updated_at": now}
        if new_status in TERMINAL_EXECUTION_STATUSES and record.completed_at is None:
            values["completed_at"] = now
        if new_status == "rolled_back" and record.rolled_back_at is None:
            values["rolled_back_at"] = now

        stmt = (
            update(ChangeRecord)
            .where(ChangeRecord.id == record.id, ChangeRecord.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = self.db.execute(stmt)
        if res.rowcount != 1:
            self.db.rollback()
            latest = self.db.scalar(select(ChangeRecord.status).where(ChangeRecord.id == record.id))
            logger.warning(
                f"[ChangeStore] Lost status race on {record.id}: expected '{current}', found '{latest}'"
            )
            raise InvalidTransition(
                record.id,
                latest,
                new_status,
                message=f"Change record {record.id} changed concurrently (now '{latest}'); cannot move to '{new_status}'",
            )

        if not commit:
            return record

        self.db.commit()
        record = self.get(record.id)
        self.notify_transition(record, current)
        return record

    def claim(self, record_id: Any, statuses: Iterable[str], operation: str) -> ChangeRecord:
        """
        Take the per-record claim held while an execute or rollback talks to
        the store platform. Exactly one caller wins; the others get
        PreconditionFailed and must not touch the platform. The claim is
        committed immediately and cleared by the terminal status update or by
        `release`.
        """
        record = self.get(record_id)
        statuses = frozenset(statuses)
        now = utcnow()
        stale = now - timedelta(seconds=app_settings.claim_timeout_seconds)

        res = self.db.execute(
            update(ChangeRecord)
            .where(
                ChangeRecord.id == record.id,
                ChangeRecord.status.in_(statuses),
                or_(ChangeRecord.claimed_at.is_(None), ChangeRecord.claimed_at < stale),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            self.db.rollback()
            latest = self.get(record.id)
            expected = "/".join(sorted(statuses))
            message = None
            if latest.status in statuses:
                message = f"Cannot {operation} change record {record.id}: another {operation} is in progress"
            logger.warning(f"[ChangeStore] Lost claim on {record.id} for {operation} (status '{latest.status}')")
            raise PreconditionFailed(record.id, latest.status, expected, operation, message=message)

        self.db.commit()
        return self.get(record.id)

    def release(self, record_id: Any) -> None:
        self.db.execute(
            update(ChangeRecord)
            .where(ChangeRecord.id == _as_uuid(record_id))
            .values(claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def notify_transition(self, record: ChangeRecord, previous: str) -> None:
        """Invalidate cached counts and publish the transition event."""
        logger.info(f"[ChangeStore] {record.id}: {previous} -> {record.status}")
        invalidate_counts(record.merchant_id)
        self.event_bus.publish(STATUS_CHANGED, self._event_data(record, previous, record.status))

    def add_corrective(self, original: ChangeRecord) -> ChangeRecord:
        """
        Stage the record that documents a rollback of `original`.
        The caller commits it together with the original's transition.
        """
        now = utcnow()
        before = original.payload.get("before", {})
        after = original.payload.get("after", {})
        corrective = ChangeRecord(
            id=uuid.uuid4(),
            merchant_id=original.merchant_id,
            action_type=original.action_type,
            entity_type=original.entity_type,
            entity_id=original.entity_id,
            status="completed",
            decision_reason=f"Rollback of change {original.id}",
            rule_id=original.rule_id,
            payload={"before": after, "after": before},
            result={"rollback_of": str(original.id), "restored": before},
            executed_by="user",
            dry_run=False,
            published_to_shopify=True,
            counted_toward_daily_cap=False,
            reverts_id=original.id,
            created_at=now,
            completed_at=now,
        )
        self.db.add(corrective)
        self.db.flush()
        return corrective

    def counts(self, merchant_id: str) -> dict[str, int]:
        return get_counts(self.db, merchant_id)

    def record_actual_impact(self, record_id: Any, impact: ActualImpact | dict) -> ChangeRecord:
        """
        Write-back from the impact measurement process. Only applied changes
        (completed, or completed and later rolled back) can be measured.
        """
        if not isinstance(impact, ActualImpact):
            try:
                impact = ActualImpact.model_validate(impact)
            except ValidationError as e:
                raise InvalidPayload(
                    "Invalid actual impact",
                    errors=e.errors(include_url=False, include_context=False, include_input=False),
                ) from e

        record = self.get(record_id)
        if record.status not in ("completed", "rolled_back"):
            raise PreconditionFailed(record.id, record.status, "completed", "record actual impact for")

        self.db.execute(
            update(ChangeRecord)
            .where(ChangeRecord.id == record.id)
            .values(actual_impact=impact.model_dump(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"[ChangeStore] Recorded actual impact for {record.id}: {impact.revenue_delta}")
        return self.get(record.id)

    @staticmethod
    def _event_data(record: ChangeRecord, previous: Optional[str], status: str) -> dict[str, Any]:
        return {
            "record_id": str(record.id),
            "merchant_id": record.merchant_id,
            "action_type": record.action_type,
            "executed_by": record.executed_by,
            "from_status": previous,
            "to_status": status,
            "reverts_id": str(record.reverts_id) if record.reverts_id else None,
        }
