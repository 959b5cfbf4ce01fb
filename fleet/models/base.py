"""Shared model plumbing."""

import secrets
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to datetimes sent without an offset."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def new_id(prefix: str = "", nbytes: int = 12) -> str:
    """Generate a url-safe unique identifier."""
    return f"{prefix}{secrets.token_urlsafe(nbytes)}"


class APIModel(BaseModel):
    """Base model accepting snake_case or camelCase and emitting camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )
