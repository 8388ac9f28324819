"""Database models package."""

from verethfier.models.base import Base, TimestampMixin, UUIDMixin  # noqa: F401
from verethfier.models.rule import LegacyServerRole, VerifierRule  # noqa: F401
from verethfier.models.assignment import RoleAssignment, UserWallet  # noqa: F401

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "VerifierRule",
    "LegacyServerRole",
    "RoleAssignment",
    "UserWallet",
]
