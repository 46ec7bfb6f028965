from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any

import httpx

from app.services.change_control.errors import ExternalMutationFailed
from app.settings import settings

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "zyra"

PRODUCT_ACTIONS = ("optimize_seo", "fix_product", "content_refresh", "discoverability")


def _normalize_shopify_error_message(status_code: int, data: dict[str, Any]) -> str:
    """
    Turn a Shopify Admin API error body into one readable line.

    Shopify reports errors as {"errors": "..."} or
    {"errors": {"field": ["msg", ...]}}.
    """
    error_messages = {
        400: "Bad request",
        401: "Authentication failed",
        402: "Shop is frozen (payment required)",
        403: "Access token lacks the required scope",
        404: "Resource not found",
        406: "Not acceptable",
        422: "Validation failed",
        423: "Shop is locked",
        429: "Rate limited (retry later)",
        500: "Shopify server error (retry later)",
        503: "Shopify unavailable (retry later)",
    }
    base_message = error_messages.get(status_code, f"HTTP {status_code} error")

    if not isinstance(data, dict):
        return base_message

    errors = data.get("errors") or data.get("error")
    if isinstance(errors, str):
        return f"{base_message}: {errors}"
    if isinstance(errors, dict):
        parts = []
        for key, value in errors.items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            parts.append(f"{key} {value}")
        if parts:
            return f"{base_message}: {'; '.join(parts)}"
    if isinstance(errors, list) and errors:
        return f"{base_message}: {'; '.join(str(e) for e in errors)}"

    message = data.get("message")
    if message:
        return f"{base_message}: {message}"
    return base_message


def _money(value: Any) -> str | None:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


class ShopifyClient:
    """Store platform backed by the Shopify Admin REST API."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2024-10",
        timeout: httpx.Timeout | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._shop_domain = shop_domain.strip().rstrip("/")
        self._access_token = access_token
        self._base_url = f"https://{self._shop_domain}/admin/api/{api_version}"
        self._timeout = timeout or httpx.Timeout(30.0, connect=10.0)
        self._transport = transport

    @classmethod
    def from_settings(cls, transport: httpx.BaseTransport | None = None) -> "ShopifyClient":
        return cls(
            shop_domain=settings.shopify_shop_domain,
            access_token=settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            timeout=httpx.Timeout(
                settings.shopify_timeout_seconds,
                connect=settings.shopify_connect_timeout_seconds,
            ),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._shop_domain and self._access_token)

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        url = f"{self._base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self._access_token,
        }

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                if method == "GET":
                    resp = client.get(url, headers=headers)
                elif method == "POST":
                    resp = client.post(url, json=payload, headers=headers)
                elif method == "PUT":
                    resp = client.put(url, json=payload, headers=headers)
                else:
                    raise ValueError(f"Unsupported method: {method}")
        except httpx.RequestError as e:
            return 0, {"code": "TRANSPORT_ERROR", "message": str(e)}

        if not resp.content:
            if resp.status_code >= 400:
                return resp.status_code, {
                    "code": "EMPTY_RESPONSE",
                    "message": _normalize_shopify_error_message(resp.status_code, {}),
                }
            return resp.status_code, {}

        try:
            data = resp.json()
        except ValueError:
            return resp.status_code, {
                "code": "PARSE_ERROR",
                "message": _normalize_shopify_error_message(resp.status_code, {}),
                "_raw_text": resp.text[:500],
            }

        if isinstance(data, dict):
            if resp.status_code >= 400:
                data["_normalized_message"] = _normalize_shopify_error_message(resp.status_code, data)
            return resp.status_code, data

        return resp.status_code, {"_raw": data}

    def get(self, path: str) -> tuple[int, dict[str, Any]]:
        return self._request("GET", path)

    def post(self, path: str, payload: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
        return self._request("POST", path, payload=payload)

    def put(self, path: str, payload: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
        return self._request("PUT", path, payload=payload)

    def _call(self, method: str, path: str, payload: dict[str, Any], entity_id: str | None, calls: list) -> dict[str, Any]:
        code, data = self._request(method, path, payload)
        calls.append({"method": method, "path": path, "status": code})
        if code == 0:
            raise ExternalMutationFailed(
                f"Shopify request failed: {data.get('message')}",
                entity_id=entity_id,
            )
        if code >= 400:
            message = data.get("_normalized_message") or data.get("message") or f"HTTP {code}"
            raise ExternalMutationFailed(
                f"Shopify rejected {method} {path}: {message}",
                status_code=code,
                entity_id=entity_id,
                response_body=json.dumps(data, ensure_ascii=False, default=str)[:500],
            )
        return data

    # --------------------------------------------------------------------------
    # Store platform
    # --------------------------------------------------------------------------

    def apply_content(self, entity_id: str | None, action_type: str, content: dict[str, Any]) -> dict[str, Any]:
        """
        Write one side of a change (`before` or `after`) to the shop.

        Product actions update the product (and its images); price changes
        update a variant; cart recovery and A/B test settings are stored as
        shop metafields in the `zyra` namespace.

        Returns a summary of the calls made. Raises ExternalMutationFailed.
        """
        if not self.configured:
            raise ExternalMutationFailed("Shopify store is not configured", entity_id=entity_id)

        calls: list[dict[str, Any]] = []
        if action_type in PRODUCT_ACTIONS:
            self._apply_product(entity_id, action_type, content, calls)
        elif action_type == "adjust_price":
            self._apply_price(entity_id, content, calls)
        elif action_type in ("send_cart_recovery", "run_ab_test"):
            self._apply_shop_setting(entity_id, action_type, content, calls)
        else:
            raise ExternalMutationFailed(f"Unsupported action type '{action_type}'", entity_id=entity_id)

        logger.info(f"[Shopify] Applied {action_type} to {entity_id} ({len(calls)} call(s))")
        return {"entity_id": entity_id, "calls": calls}

    def _apply_product(self, entity_id: str | None, action_type: str, content: dict[str, Any], calls: list) -> None:
        if not entity_id:
            raise ExternalMutationFailed(f"{action_type} requires a product id")

        product: dict[str, Any] = {"id": entity_id}
        if "title" in content:
            product["title"] = content["title"]
        if "description" in content:
            product["body_html"] = content["description"]
        if "seo_title" in content:
            product["metafields_global_title_tag"] = content["seo_title"]
        if "meta_description" in content:
            product["metafields_global_description_tag"] = content["meta_description"]
        if "tags" in content:
            product["tags"] = ", ".join(content["tags"])
        if "product_type" in content:
            product["product_type"] = content["product_type"]
        if "vendor" in content:
            product["vendor"] = content["vendor"]
        if "keywords" in content:
            product["metafields"] = [{
                "namespace": METAFIELD_NAMESPACE,
                "key": "seo_keywords",
                "type": "single_line_text_field",
                "value": ", ".join(content["keywords"]),
            }]

        if len(product) > 1:
            self._call("PUT", f"/products/{entity_id}.json", {"product": product}, entity_id, calls)

        for image in content.get("image_alt_texts") or []:
            image_id = image["image_id"]
            self._call(
                "PUT",
                f"/products/{entity_id}/images/{image_id}.json",
                {"image": {"id": image_id, "alt": image["alt"]}},
                entity_id,
                calls,
            )

    def _apply_price(self, entity_id: str | None, content: dict[str, Any], calls: list) -> None:
        variant_id = content.get("variant_id")
        if not variant_id:
            raise ExternalMutationFailed("adjust_price requires a variant_id", entity_id=entity_id)

        variant: dict[str, Any] = {"id": variant_id}
        if "price" in content:
            variant["price"] = _money(content["price"])
        if "compare_at_price" in content:
            variant["compare_at_price"] = _money(content["compare_at_price"])
        self._call("PUT", f"/variants/{variant_id}.json", {"variant": variant}, entity_id, calls)

    def _apply_shop_setting(self, entity_id: str | None, action_type: str, content: dict[str, Any], calls: list) -> None:
        if action_type == "send_cart_recovery":
            key = f"cart_recovery_{content.get('cart_id') or entity_id or 'default'}"
        else:
            key = f"ab_test_{content.get('test_id') or entity_id or 'default'}"

        metafield = {
            "namespace": METAFIELD_NAMESPACE,
            "key": key[:64],
            "type": "json",
            "value": json.dumps(content, ensure_ascii=False, default=str),
        }
        self._call("POST", "/metafields.json", {"metafield": metafield}, entity_id, calls)
