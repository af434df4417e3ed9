# backend/app/models/base_enum.py
"""
Enum helpers for SQLAlchemy models.

Statuses are stored as plain strings holding the enum VALUE, guarded by a
CHECK constraint so raw SQL and ORM writes agree on the allowed set.

Usage:
    class MyStatus(str, Enum):
        ACTIVE = "active"

    __table_args__ = (enum_check("status", MyStatus, "ck_my_table_status"),)
"""

from enum import Enum
from typing import List, Type

from sqlalchemy import CheckConstraint


def enum_values(enum_class: Type[Enum]) -> List[str]:
    """Return the persisted values of an enum in declaration order."""
    return [member.value for member in enum_class]


def enum_check(column: str, enum_class: Type[Enum], name: str, *, nullable: bool = False) -> CheckConstraint:
    """Build a CHECK constraint restricting ``column`` to the enum's values."""
    allowed = ", ".join(f"'{value}'" for value in enum_values(enum_class))
    clause = f"{column} IN ({allowed})"
    if nullable:
        clause = f"{column} IS NULL OR {clause}"
    return CheckConstraint(clause, name=name)
