"""
User directory: registration and shipping profiles.

Authentication lives elsewhere; this module only owns identity records and
the postal-format rules shared with order shipping snapshots.
"""
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import pydantic
import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.core.errors import NotFoundError, ValidationError
from printflow.database.connection import get_session_factory
from printflow.database.models import User, utc_now
from printflow.database.upsert import insert_if_absent

logger = structlog.get_logger(__name__)

POSTAL_CODE_PATTERN = re.compile(r"^\d{3}-?\d{4}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_postal_code(v: Optional[str]) -> Optional[str]:
    if v is not None and not POSTAL_CODE_PATTERN.match(v):
        raise ValueError("postal_code must look like 123-4567 or 1234567")
    return v


class ShippingProfile(BaseModel):
    """Mutable profile fields on a user. Every field is optional."""

    postal_code: Optional[str] = Field(default=None, max_length=8)
    pref_code: Optional[str] = Field(default=None, max_length=2)
    prefecture_name: Optional[str] = Field(default=None, max_length=20)
    city: Optional[str] = Field(default=None, max_length=100)
    address_line: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)

    model_config = {"extra": "forbid"}

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: Optional[str]) -> Optional[str]:
        return _check_postal_code(v)


class ShippingAddress(BaseModel):
    """Address snapshot copied onto an order."""

    name: str = Field(..., min_length=1, max_length=255)
    postal_code: str = Field(..., max_length=8)
    prefecture_name: str = Field(..., min_length=1, max_length=20)
    city: str = Field(..., min_length=1, max_length=100)
    address_line: str = Field(..., min_length=1, max_length=255)
    pref_code: Optional[str] = Field(default=None, max_length=2)
    phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: str) -> str:
        return _check_postal_code(v)  # type: ignore[return-value]


def _format_pydantic_error(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}"


def parse_shipping_address(data: Any) -> ShippingAddress:
    """Validate a shipping address document, raising ValidationError on failure."""
    if isinstance(data, ShippingAddress):
        return data
    try:
        return ShippingAddress.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid shipping address: {_format_pydantic_error(e)}", field="shipping_address")


def parse_shipping_profile(data: Any) -> ShippingProfile:
    if isinstance(data, ShippingProfile):
        return data
    try:
        return ShippingProfile.model_validate(data or {})
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid profile: {_format_pydantic_error(e)}", field="profile")


@dataclass(frozen=True)
class UserResult:
    user: User
    created: bool


class UserDirectory:
    """Registers users and maintains their shipping profiles."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()

    async def register_user(
        self, email: str, name: str, profile: Optional[Dict[str, Any]] = None
    ) -> UserResult:
        """
        Register a user, or return the existing user for the same email.

        Raises:
            ValidationError: For a malformed email, blank name or bad profile
        """
        email = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError(f"Invalid email: {email!r}", field="email")
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        shipping = parse_shipping_profile(profile)

        async with self.session_factory() as session, session.begin():
            created = await insert_if_absent(
                session,
                User,
                {
                    "id": uuid.uuid4(),
                    "email": email,
                    "name": name.strip(),
                    **shipping.model_dump(exclude_none=True),
                },
            )
            user = (await session.execute(select(User).where(User.email == email))).scalar_one()

        if created:
            logger.info("user_registered", user_id=str(user.id))
        else:
            logger.info("user_registration_deduplicated", user_id=str(user.id))
        return UserResult(user=user, created=created)

    async def update_profile(self, user_id: uuid.UUID, profile: Dict[str, Any]) -> User:
        """Overwrite the given profile fields; omitted fields are left as they are."""
        shipping = parse_shipping_profile(profile)
        async with self.session_factory() as session, session.begin():
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            for key, value in shipping.model_dump(exclude_unset=True).items():
                setattr(user, key, value)
            user.updated_at = utc_now()

        logger.info("user_profile_updated", user_id=str(user_id))
        return user

    async def get_user(self, user_id: uuid.UUID) -> User:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user
