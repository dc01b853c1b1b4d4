from sqlalchemy import Boolean, Column, Integer, String, DateTime
from .base import BaseModel
from .types import CaseInsensitiveEnum
import enum


class UserRole(str, enum.Enum):
    """Enumeration of all supported account roles."""

    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    AGENT = "agent"

    @classmethod
    def _missing_(cls, value: object):
        """Resolve other spellings through the shared role table."""
        if isinstance(value, str):
            from ..realtime.roles import ROLE_SPELLINGS

            return ROLE_SPELLINGS.get(value.strip().lower())
        return None


class User(BaseModel):
    __tablename__ = "users"

    id             = Column(Integer, primary_key=True, index=True)
    email          = Column(String, unique=True, index=True, nullable=False)
    full_name      = Column(String, nullable=False, default="")
    role           = Column(CaseInsensitiveEnum(UserRole, name="userrole"), nullable=False)
    is_active      = Column(Boolean, default=True, nullable=False)
    # Presence mirror; the live source of truth is the in-process registry
    is_online      = Column(Boolean, default=False, nullable=False)
    last_active_at = Column(DateTime, nullable=True)
