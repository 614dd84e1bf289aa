from __future__ import annotations

from uuid import UUID

from .errors import ValidationFailed


def parse_uuid(value: UUID | str, *, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(value)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {field_name}.") from exc
