from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from journeyflow.models.common import ensure_utc

# Variant spellings seen across Shopify payloads, the contact book and older JSON exports.
FIELD_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "totalSpent": "total_spent",
    "ordersCount": "orders_count",
    "orderCount": "orders_count",
    "order_count": "orders_count",
    "total_orders": "orders_count",
    "acceptsMarketing": "accepts_marketing",
    "marketing_opt_in": "accepts_marketing",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "defaultAddress": "default_address",
    "lastMessageAt": "last_message_at",
    "windowExpiresAt": "window_expires_at",
}


class Address(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    default: bool = False


class Customer(BaseModel):
    """Read-only customer view: commerce attributes plus messaging window state."""

    model_config = ConfigDict(extra="ignore")

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    total_spent: float = 0.0
    orders_count: int = 0
    accepts_marketing: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    default_address: Optional[Address] = None
    addresses: List[Address] = Field(default_factory=list)
    last_message_at: Optional[datetime] = None
    window_expires_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return str(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return [str(tag).strip() for tag in value if str(tag).strip()]

    @field_validator("total_spent", mode="before")
    @classmethod
    def _to_float(cls, value):
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("orders_count", mode="before")
    @classmethod
    def _to_int(cls, value):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    @field_validator("accepts_marketing", mode="before")
    @classmethod
    def _to_bool(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1", "subscribed")
        return bool(value)

    @field_validator("created_at", "updated_at", "last_message_at", "window_expires_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "Customer":
        """Build a customer from any supported payload, normalising field-name variants."""
        data = {}
        for key, value in raw.items():
            canonical = FIELD_ALIASES.get(key, key)
            # An explicit canonical key wins over an alias for the same field.
            if canonical in data and key != canonical:
                continue
            data[canonical] = value
        return cls.model_validate(data)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def primary_address(self) -> Optional[Address]:
        if self.default_address is not None:
            return self.default_address
        if not self.addresses:
            return None
        return next((address for address in self.addresses if address.default), self.addresses[0])

    @property
    def contact_phone(self) -> Optional[str]:
        if self.phone:
            return self.phone
        address = self.primary_address
        return address.phone if address else None

    def has_tag(self, tag: str) -> bool:
        wanted = (tag or "").strip().lower()
        return bool(wanted) and wanted in {existing.lower() for existing in self.tags}

    def with_contact_window(
        self,
        last_message_at: Optional[datetime],
        window_expires_at: Optional[datetime] = None,
    ) -> "Customer":
        return self.model_copy(
            update={
                "last_message_at": ensure_utc(last_message_at) or self.last_message_at,
                "window_expires_at": ensure_utc(window_expires_at) or self.window_expires_at,
            }
        )


_PHONE_STRIP = str.maketrans("", "", " -+()")


def normalize_phone(phone: Optional[str]) -> str:
    """Digits-only phone number, or an empty string when nothing usable remains."""
    if not phone:
        return ""
    digits = str(phone).translate(_PHONE_STRIP)
    return digits if digits.isdigit() else ""


class ContactWindow(BaseModel):
    """Messaging contact state used to decide free-form vs. template sends."""

    phone: str
    customer_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    window_expires_at: Optional[datetime] = None

    @field_validator("last_message_at", "window_expires_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)
