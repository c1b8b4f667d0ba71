from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, Field, field_validator

from journeyflow.models.common import CamelModel

ORDER_CREATED = "order_created"
CUSTOMER_UPDATED = "customer_updated"


class CommerceEvent(CamelModel):
    """Incoming commerce webhook, reduced to what trigger matching reads."""

    type: str = Field(validation_alias=AliasChoices("type", "event", "topic"))
    customer_id: Optional[str] = Field(None, validation_alias=AliasChoices("customer_id", "customerId"))
    tags: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_topic(cls, value):
        # Shopify topics arrive as "orders/create" and "customers/update".
        topics = {"orders/create": ORDER_CREATED, "customers/update": CUSTOMER_UPDATED}
        return topics.get(value, value)

    @field_validator("customer_id", mode="before")
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value
