"""
Automation settings API endpoints

Per-merchant autopilot configuration and a manual autopilot tick.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_merchant_id, raise_http
from app.db import get_session
from app.schemas.change_record import AutomationSettingsOut, AutomationSettingsPatch, AutopilotTickOut
from app.services.change_control.autopilot import AutopilotRunner
from app.services.change_control.automation import AutomationSettingsService
from app.services.change_control.errors import ChangeControlError
from app.services.change_control.platform import StorePlatform, get_store_platform

router = APIRouter()


@router.get("/settings", response_model=AutomationSettingsOut)
def get_automation_settings(
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> AutomationSettingsOut:
    return AutomationSettingsOut.model_validate(AutomationSettingsService(session).get(merchant_id))


@router.patch("/settings", response_model=AutomationSettingsOut)
def patch_automation_settings(
    payload: AutomationSettingsPatch,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> AutomationSettingsOut:
    try:
        row = AutomationSettingsService(session).update(merchant_id, payload)
    except ChangeControlError as e:
        raise_http(e)
    return AutomationSettingsOut.model_validate(row)


@router.get("/autopilot/usage")
def get_autopilot_usage(
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> dict:
    usage = AutomationSettingsService(session).usage(merchant_id)
    started = usage["window_started_at"]
    usage["window_started_at"] = started.isoformat() if started else None
    return usage


@router.post("/autopilot/tick", response_model=AutopilotTickOut)
def run_autopilot_tick(
    limit: Optional[int] = Query(None, ge=1, le=500),
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> AutopilotTickOut:
    """
    Auto-approve and execute pending agent proposals allowed by the
    merchant's automation policy.
    """
    summary = AutopilotRunner(session, platform).tick(merchant_id, limit=limit)
    return AutopilotTickOut(
        examined=summary.examined,
        executed=summary.executed,
        denied=summary.denied,
        failed=summary.failed,
    )
