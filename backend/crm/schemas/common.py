"""Shared schema building blocks."""

import math
import re

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, matching the dashboard's JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PaginationOut(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PaginationOut":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


def normalise_email(value: str) -> str:
    email = (value or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValueError("Please provide a valid email")
    return email


def reject_null(value):
    """For partial updates: a field may be omitted but not cleared."""

    if value is None:
        raise ValueError("Field cannot be null")
    return value
