from typing import NoReturn, Optional

from fastapi import Header, HTTPException

from app.services.change_control.errors import ChangeControlError
from app.settings import settings


def get_merchant_id(x_merchant_id: Optional[str] = Header(default=None)) -> str:
    merchant_id = (x_merchant_id or "").strip()
    return merchant_id or settings.default_merchant_id


def raise_http(e: ChangeControlError) -> NoReturn:
    raise HTTPException(status_code=e.http_status, detail=e.to_dict()) from e
