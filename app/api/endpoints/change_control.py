"""
Change control API endpoints

Autonomous actions (list, create, execute, rollback) and the pending
approvals queue used by the dashboard.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_merchant_id, raise_http
from app.db import get_session
from app.models import ChangeRecord
from app.schemas.change_record import (
    ActualImpact,
    BulkRollbackItemOut,
    BulkRollbackOut,
    ChangeCountsOut,
    ChangeRecordCreate,
    ChangeRecordOut,
    ExecutionOutcomeOut,
    RejectIn,
    RollbackOutcomeOut,
)
from app.services.change_control.approval import ApprovalGate
from app.services.change_control.errors import ChangeControlError, NotFound
from app.services.change_control.executor import ExecutionEngine, ExecutionOutcome
from app.services.change_control.platform import StorePlatform, get_store_platform
from app.services.change_control.rollback import RollbackEngine
from app.services.change_control.store import ChangeRecordStore

logger = logging.getLogger(__name__)

router = APIRouter()
approvals_router = APIRouter()


class BulkRollbackIn(BaseModel):
    record_ids: Optional[list[str]] = None


def _get_owned(store: ChangeRecordStore, record_id: str, merchant_id: str) -> ChangeRecord:
    record = store.get(record_id)
    if record.merchant_id != merchant_id:
        raise NotFound(record_id)
    return record


def _outcome_response(outcome: ExecutionOutcome) -> ExecutionOutcomeOut:
    out = ExecutionOutcomeOut(
        record_id=outcome.record_id,
        status=outcome.status,
        published_to_shopify=outcome.published_to_shopify,
        error=outcome.error,
    )
    if outcome.status == "failed":
        raise HTTPException(status_code=500, detail=out.model_dump(mode="json"))
    return out


@router.get("", response_model=list[ChangeRecordOut])
def list_autonomous_actions(
    status: Optional[list[str]] = Query(None, description="pending, running, completed, failed, rolled_back, dry_run, rejected"),
    action_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> list[ChangeRecordOut]:
    store = ChangeRecordStore(session)
    records = store.list(
        merchant_id=merchant_id,
        status=status,
        action_type=action_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    return [ChangeRecordOut.model_validate(r) for r in records]


@router.post("", response_model=ChangeRecordOut, status_code=201)
def create_autonomous_action(
    payload: ChangeRecordCreate,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> ChangeRecordOut:
    """
    Record a proposal from the decision process.
    """
    store = ChangeRecordStore(session)
    try:
        record_id = store.create(payload, merchant_id)
        return ChangeRecordOut.model_validate(store.get(record_id))
    except ChangeControlError as e:
        raise_http(e)


@router.get("/stats", response_model=ChangeCountsOut)
def get_autonomous_action_stats(
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> ChangeCountsOut:
    return ChangeCountsOut(**ChangeRecordStore(session).counts(merchant_id))


@router.post("/rollback-all", response_model=BulkRollbackOut)
def rollback_all_autonomous_actions(
    payload: Optional[BulkRollbackIn] = Body(default=None),
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> BulkRollbackOut:
    outcome = RollbackEngine(session, platform).bulk_rollback(
        merchant_id, record_ids=payload.record_ids if payload else None
    )
    return BulkRollbackOut(
        total=outcome.total,
        succeeded=outcome.succeeded,
        failed=outcome.failed,
        results=[
            BulkRollbackItemOut(
                record_id=item.record_id,
                success=item.success,
                corrective_id=item.corrective_id,
                error=item.error,
            )
            for item in outcome.results
        ],
    )


@router.get("/{record_id}", response_model=ChangeRecordOut)
def get_autonomous_action(
    record_id: str,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> ChangeRecordOut:
    try:
        record = _get_owned(ChangeRecordStore(session), record_id, merchant_id)
    except ChangeControlError as e:
        raise_http(e)
    return ChangeRecordOut.model_validate(record)


@router.post("/{record_id}/execute", response_model=ExecutionOutcomeOut)
def execute_autonomous_action(
    record_id: str,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> ExecutionOutcomeOut:
    try:
        record = _get_owned(ChangeRecordStore(session), record_id, merchant_id)
        outcome = ExecutionEngine(session, platform).execute(record.id)
    except ChangeControlError as e:
        raise_http(e)
    return _outcome_response(outcome)


@router.post("/{record_id}/rollback", response_model=RollbackOutcomeOut)
def rollback_autonomous_action(
    record_id: str,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> RollbackOutcomeOut:
    try:
        record = _get_owned(ChangeRecordStore(session), record_id, merchant_id)
        outcome = RollbackEngine(session, platform).rollback(record.id)
    except ChangeControlError as e:
        raise_http(e)
    return RollbackOutcomeOut(record_id=outcome.record_id, status=outcome.status, corrective_id=outcome.corrective_id)


@router.put("/{record_id}/actual-impact", response_model=ChangeRecordOut)
def put_actual_impact(
    record_id: str,
    payload: ActualImpact,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> ChangeRecordOut:
    """
    Measured impact write-back from the analytics process.
    """
    store = ChangeRecordStore(session)
    try:
        record = _get_owned(store, record_id, merchant_id)
        record = store.record_actual_impact(record.id, payload)
    except ChangeControlError as e:
        raise_http(e)
    return ChangeRecordOut.model_validate(record)


@approvals_router.get("", response_model=list[ChangeRecordOut])
def list_pending_approvals(
    limit: int = Query(100, ge=1, le=500),
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
) -> list[ChangeRecordOut]:
    records = ChangeRecordStore(session).list(merchant_id=merchant_id, status="pending", limit=limit)
    return [ChangeRecordOut.model_validate(r) for r in records]


@approvals_router.post("/{record_id}/approve", response_model=ExecutionOutcomeOut)
def approve_pending_change(
    record_id: str,
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> ExecutionOutcomeOut:
    try:
        record = _get_owned(ChangeRecordStore(session), record_id, merchant_id)
        outcome = ApprovalGate(session, platform).approve(record.id)
    except ChangeControlError as e:
        raise_http(e)
    return _outcome_response(outcome)


@approvals_router.post("/{record_id}/reject", response_model=ChangeRecordOut)
def reject_pending_change(
    record_id: str,
    payload: Optional[RejectIn] = Body(default=None),
    merchant_id: str = Depends(get_merchant_id),
    session: Session = Depends(get_session),
    platform: StorePlatform = Depends(get_store_platform),
) -> ChangeRecordOut:
    try:
        record = _get_owned(ChangeRecordStore(session), record_id, merchant_id)
        record = ApprovalGate(session, platform).reject(record.id, payload.reason if payload else None)
    except ChangeControlError as e:
        raise_http(e)
    return ChangeRecordOut.model_validate(record)
