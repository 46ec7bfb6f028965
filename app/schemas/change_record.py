from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.services.change_control.errors import InvalidPayload

ActionType = Literal[
    "optimize_seo",
    "fix_product",
    "send_cart_recovery",
    "run_ab_test",
    "adjust_price",
    "content_refresh",
    "discoverability",
]
ChangeStatus = Literal["pending", "running", "completed", "failed", "rolled_back", "dry_run", "rejected"]
ExecutedBy = Literal["user", "agent"]
AutopilotMode = Literal["safe", "balanced", "aggressive"]

ACTION_TYPES: tuple[str, ...] = ActionType.__args__  # type: ignore[attr-defined]

# entity type implied by each action when the caller does not send one
DEFAULT_ENTITY_TYPES = {
    "optimize_seo": "product",
    "fix_product": "product",
    "content_refresh": "product",
    "discoverability": "product",
    "adjust_price": "product",
    "send_cart_recovery": "cart",
    "run_ab_test": "campaign",
}


class _Content(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SeoContent(_Content):
    title: Optional[str] = None
    seo_title: Optional[str] = None
    meta_description: Optional[str] = None
    keywords: Optional[list[str]] = None


class ProductFixContent(_Content):
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    product_type: Optional[str] = None
    vendor: Optional[str] = None


class ContentRefreshContent(_Content):
    title: Optional[str] = None
    description: Optional[str] = None


class ImageAltText(_Content):
    image_id: str
    alt: str


class DiscoverabilityContent(_Content):
    tags: Optional[list[str]] = None
    image_alt_texts: Optional[list[ImageAltText]] = None


class PriceContent(_Content):
    variant_id: Optional[str] = None
    price: Optional[Decimal] = None
    compare_at_price: Optional[Decimal] = None

    @field_validator("price", "compare_at_price")
    @classmethod
    def validate_non_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("price must not be negative")
        return v


class CartRecoveryContent(_Content):
    cart_id: Optional[str] = None
    channel: Optional[Literal["email", "sms"]] = None
    message: Optional[str] = None
    enabled: Optional[bool] = None


class AbTestContent(_Content):
    test_id: Optional[str] = None
    variant: Optional[str] = None
    traffic_split: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    active: Optional[bool] = None


def _payload_model(name: str, content: type[_Content]) -> type[BaseModel]:
    class _Payload(BaseModel):
        model_config = ConfigDict(extra="forbid")

        before: content  # type: ignore[valid-type]
        after: content  # type: ignore[valid-type]

        @model_validator(mode="after")
        def require_snapshot(self):
            if not self.before.model_dump(exclude_none=True):
                raise ValueError("payload.before must capture at least one field")
            return self

    _Payload.__name__ = name
    _Payload.__qualname__ = name
    return _Payload


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "optimize_seo": _payload_model("SeoPayload", SeoContent),
    "fix_product": _payload_model("ProductFixPayload", ProductFixContent),
    "content_refresh": _payload_model("ContentRefreshPayload", ContentRefreshContent),
    "discoverability": _payload_model("DiscoverabilityPayload", DiscoverabilityContent),
    "adjust_price": _payload_model("PricePayload", PriceContent),
    "send_cart_recovery": _payload_model("CartRecoveryPayload", CartRecoveryContent),
    "run_ab_test": _payload_model("AbTestPayload", AbTestContent),
}


def validate_payload(action_type: str, payload: Any) -> dict:
    """
    Validate a before/after snapshot against the variant for `action_type`.

    Returns the normalised JSON-ready dict that gets stored. Raises
    InvalidPayload for unknown action types or malformed snapshots.
    """
    model = PAYLOAD_MODELS.get(action_type)
    if model is None:
        raise InvalidPayload(f"Unknown action type '{action_type}'", action_type=action_type)
    try:
        parsed = model.model_validate(payload)
    except ValidationError as e:
        raise InvalidPayload(
            f"Invalid payload for {action_type}",
            action_type=action_type,
            errors=e.errors(include_url=False, include_context=False),
        ) from e
    return parsed.model_dump(mode="json", exclude_none=True)


class EstimatedImpact(BaseModel):
    model_config = ConfigDict(extra="allow")

    expected_revenue: float = 0.0
    confidence: Optional[float | str] = None
    risk: Optional[Literal["low", "medium", "high"]] = None


class ActualImpact(BaseModel):
    model_config = ConfigDict(extra="allow")

    revenue_delta: float
    status: str = "measured"


class ChangeRecordCreate(BaseModel):
    action_type: ActionType
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    status: Literal["pending", "running"] = "pending"
    decision_reason: Optional[str] = None
    rule_id: Optional[str] = None
    payload: dict
    estimated_impact: Optional[EstimatedImpact] = None
    executed_by: ExecutedBy = "agent"
    dry_run: bool = False

    @model_validator(mode="after")
    def validate_variant(self):
        try:
            self.payload = validate_payload(self.action_type, self.payload)
        except InvalidPayload as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
                for err in e.context.get("errors", [])
            )
            raise ValueError(f"{e.message}: {details}" if details else e.message) from e
        if self.entity_type is None:
            self.entity_type = DEFAULT_ENTITY_TYPES.get(self.action_type)
        return self


class ChangeRecordOut(BaseModel):
    id: uuid.UUID
    merchant_id: str
    action_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    status: str
    decision_reason: Optional[str] = None
    rule_id: Optional[str] = None
    payload: dict
    result: Optional[dict] = None
    estimated_impact: Optional[dict] = None
    actual_impact: Optional[dict] = None
    executed_by: str
    dry_run: bool
    published_to_shopify: bool
    reverts_id: Optional[uuid.UUID] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RejectIn(BaseModel):
    reason: Optional[str] = None


class ChangeCountsOut(BaseModel):
    pending: int = 0
    running: int = 0
    applied: int = 0
    dry_run: int = 0
    failed: int = 0
    rolled_back: int = 0
    rejected: int = 0


class ExecutionOutcomeOut(BaseModel):
    record_id: uuid.UUID
    status: str
    published_to_shopify: bool
    error: Optional[str] = None


class RollbackOutcomeOut(BaseModel):
    record_id: uuid.UUID
    status: str
    corrective_id: uuid.UUID


class BulkRollbackItemOut(BaseModel):
    record_id: uuid.UUID
    success: bool
    corrective_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


class BulkRollbackOut(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: list[BulkRollbackItemOut]


class AutomationSettingsOut(BaseModel):
    merchant_id: str
    global_autopilot_enabled: bool
    autopilot_enabled: bool
    autopilot_mode: str
    dry_run_mode: bool
    auto_publish_enabled: bool
    max_daily_actions: int
    enabled_action_types: list[str]
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AutomationSettingsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    global_autopilot_enabled: Optional[bool] = None
    autopilot_enabled: Optional[bool] = None
    autopilot_mode: Optional[AutopilotMode] = None
    dry_run_mode: Optional[bool] = None
    auto_publish_enabled: Optional[bool] = None
    max_daily_actions: Optional[int] = Field(default=None, ge=0)
    enabled_action_types: Optional[list[ActionType]] = None


class AutopilotTickOut(BaseModel):
    examined: int
    executed: int
    denied: int
    failed: int
