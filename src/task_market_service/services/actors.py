"""Caller identity as supplied by the authentication layer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    """Account role of an authenticated caller."""

    CUSTOMER = "customer"
    TASKER = "tasker"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """An authenticated caller. Anonymous callers are represented by None."""

    subject_id: str
    role: Role

    @property
    def is_customer(self) -> bool:
        return self.role is Role.CUSTOMER

    @property
    def is_tasker(self) -> bool:
        return self.role is Role.TASKER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
