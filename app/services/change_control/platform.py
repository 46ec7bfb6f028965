from typing import Any, Optional, Protocol


class StorePlatform(Protocol):
    """
    External store that receives content writes. Implementations raise
    ExternalMutationFailed when the write is rejected.
    """

    def apply_content(self, entity_id: Optional[str], action_type: str, content: dict[str, Any]) -> dict[str, Any]:
        ...


def get_store_platform() -> StorePlatform:
    from app.shopify_client import ShopifyClient

    return ShopifyClient.from_settings()
