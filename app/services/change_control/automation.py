"""
Automation settings and autopilot policy.

One AutomationSettings row per merchant, created with defaults on first
read. The policy helpers decide whether a change may run without a human:
risk tier under the mode ceiling, action type enabled, and a free slot in
the rolling daily quota.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import AutomationSettings, AutopilotQuota, ChangeRecord, utcnow
from app.schemas.change_record import AutomationSettingsPatch
from app.services.change_control.errors import InvalidPayload, PolicyDenied
from app.services.change_control.risk import record_risk_tier, risk_ceiling, within_ceiling
from app.services.events import SETTINGS_UPDATED, EventBus, bus
from app.settings import settings as app_settings

logger = logging.getLogger(__name__)


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


class AutomationSettingsService:
    def __init__(self, db: Session, event_bus: EventBus = bus, window_hours: Optional[int] = None):
        self.db = db
        self.event_bus = event_bus
        self.window = timedelta(hours=window_hours or app_settings.autopilot_window_hours)

    def get(self, merchant_id: str) -> AutomationSettings:
        row = self._load(merchant_id)
        if row is not None:
            return row

        row = AutomationSettings(merchant_id=merchant_id)
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # another request created it first
            self.db.rollback()
            return self._load(merchant_id)
        logger.info(f"[Automation] Created default settings for merchant {merchant_id}")
        return self._load(merchant_id)

    def update(self, merchant_id: str, patch: AutomationSettingsPatch | dict) -> AutomationSettings:
        if not isinstance(patch, AutomationSettingsPatch):
            try:
                patch = AutomationSettingsPatch.model_validate(patch)
            except ValidationError as e:
                raise InvalidPayload(
                    "Invalid automation settings",
                    errors=e.errors(include_url=False, include_context=False, include_input=False),
                ) from e

        changes = patch.model_dump(exclude_unset=True)
        # explicit nulls mean "leave unchanged"
        changes = {k: v for k, v in changes.items() if v is not None}
        if "enabled_action_types" in changes:
            changes["enabled_action_types"] = list(dict.fromkeys(changes["enabled_action_types"]))

        row = self.get(merchant_id)
        if not changes:
            return row

        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = utcnow()
        self.db.commit()
        row = self._load(merchant_id)

        logger.info(f"[Automation] Updated settings for merchant {merchant_id}: {sorted(changes)}")
        self.event_bus.publish(SETTINGS_UPDATED, {"merchant_id": merchant_id, "changes": changes})
        return row

    def check_risk(self, record: ChangeRecord, conf: AutomationSettings) -> str:
        tier = record_risk_tier(record)
        if not within_ceiling(tier, conf.autopilot_mode):
            raise PolicyDenied(
                record.id,
                f"Risk tier '{tier}' exceeds the '{conf.autopilot_mode}' autopilot ceiling "
                f"('{risk_ceiling(conf.autopilot_mode)}')",
                "risk_ceiling",
            )
        return tier

    def authorize_unattended(self, record: ChangeRecord, conf: AutomationSettings) -> str:
        """
        Full autopilot policy for a pending agent proposal. Returns the risk
        tier, raises PolicyDenied otherwise. Does not reserve a slot.
        """
        if not conf.global_autopilot_enabled:
            raise PolicyDenied(record.id, "Automation is globally disabled for this merchant", "global_disabled")
        if not conf.autopilot_enabled:
            raise PolicyDenied(record.id, "Autopilot is disabled for this merchant", "autopilot_disabled")
        if record.action_type not in (conf.enabled_action_types or []):
            raise PolicyDenied(
                record.id,
                f"Action type '{record.action_type}' is not enabled for autopilot",
                "action_type_disabled",
            )
        return self.check_risk(record, conf)

    def ensure_quota(self, merchant_id: str) -> None:
        if self.db.get(AutopilotQuota, merchant_id) is not None:
            return
        self.db.add(AutopilotQuota(merchant_id=merchant_id, window_started_at=utcnow(), used=0))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()

    def reserve_daily_slot(self, merchant_id: str, record_id: Any, limit: int) -> None:
        """
        Consume one autopilot slot for `record_id`.

        Flags the record as counted and increments the merchant's quota in
        the current transaction; the caller commits. Must be called before
        the caller stages any other writes, since creating the quota row
        commits on its own.

        Raises:
            PolicyDenied: the cap is reached or the record already holds a slot
        """
        if limit <= 0:
            raise PolicyDenied(record_id, "Autopilot daily action limit is 0", "daily_cap")

        self.ensure_quota(merchant_id)

        flagged = self.db.execute(
            update(ChangeRecord)
            .where(ChangeRecord.id == record_id, ChangeRecord.counted_toward_daily_cap.is_(False))
            .values(counted_toward_daily_cap=True)
            .execution_options(synchronize_session=False)
        )
        if flagged.rowcount != 1:
            self.db.rollback()
            raise PolicyDenied(record_id, "Change record already holds an autopilot slot", "already_counted")

        now = utcnow()
        cutoff = now - self.window
        res = self.db.execute(
            update(AutopilotQuota)
            .where(
                AutopilotQuota.merchant_id == merchant_id,
                AutopilotQuota.used < limit,
                AutopilotQuota.window_started_at > cutoff,
            )
            .values(used=AutopilotQuota.used + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            # window expired: restart it with this reservation
            res = self.db.execute(
                update(AutopilotQuota)
                .where(
                    AutopilotQuota.merchant_id == merchant_id,
                    AutopilotQuota.window_started_at <= cutoff,
                )
                .values(used=1, window_started_at=now)
                .execution_options(synchronize_session=False)
            )
        if res.rowcount != 1:
            self.db.rollback()
            logger.info(f"[Automation] Daily cap reached for merchant {merchant_id} (limit={limit})")
            raise PolicyDenied(
                record_id,
                f"Autopilot daily action limit of {limit} reached",
                "daily_cap",
            )
        logger.debug(f"[Automation] Reserved autopilot slot for {record_id} (merchant={merchant_id})")

    def usage(self, merchant_id: str) -> dict[str, Any]:
        conf = self.get(merchant_id)
        quota = self.db.scalars(
            select(AutopilotQuota)
            .where(AutopilotQuota.merchant_id == merchant_id)
            .execution_options(populate_existing=True)
        ).first()
        used = 0
        window_started_at = None
        if quota is not None:
            window_started_at = _aware(quota.window_started_at)
            if utcnow() - window_started_at < self.window:
                used = quota.used
        return {
            "merchant_id": merchant_id,
            "used": used,
            "limit": conf.max_daily_actions,
            "remaining": max(conf.max_daily_actions - used, 0),
            "window_started_at": window_started_at,
        }

    def _load(self, merchant_id: str) -> Optional[AutomationSettings]:
        stmt = (
            select(AutomationSettings)
            .where(AutomationSettings.merchant_id == merchant_id)
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).first()
