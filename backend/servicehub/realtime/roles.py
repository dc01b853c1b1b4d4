"""Single role-mapping table consulted by every authorization decision.

Accounts carry one of ``client``, ``provider``, ``admin`` or ``agent``;
legacy spellings resolve through ``ROLE_SPELLINGS``.
Support messages record only two sides (``user`` and ``admin``); the table
below is the one place where account roles map onto them.
"""

from typing import Optional

from ..models.support import SupportSenderRole
from ..models.user import UserRole

# Every accepted spelling of an account role, including those written by
# older clients. ``UserRole`` lookups fall back to this table.
ROLE_SPELLINGS = {
    **{role.value: role for role in UserRole},
    "customer": UserRole.CLIENT,
    "user": UserRole.CLIENT,
    "service_provider": UserRole.PROVIDER,
    "support": UserRole.AGENT,
    "support_agent": UserRole.AGENT,
}

AGENT_ROLES = frozenset({UserRole.ADMIN, UserRole.AGENT})

SUPPORT_SENDER_ROLES = {
    UserRole.CLIENT: SupportSenderRole.USER,
    UserRole.PROVIDER: SupportSenderRole.USER,
    UserRole.ADMIN: SupportSenderRole.ADMIN,
    UserRole.AGENT: SupportSenderRole.ADMIN,
}


def normalize_role(value) -> Optional[UserRole]:
    """Coerce a stored or claimed role into :class:`UserRole`.

    Unknown spellings return ``None`` so callers can reject the identity.
    """
    if value is None:
        return None
    if isinstance(value, UserRole):
        return value
    return ROLE_SPELLINGS.get(str(value).strip().lower())


def is_agent(role) -> bool:
    return normalize_role(role) in AGENT_ROLES


def is_provider(role) -> bool:
    return normalize_role(role) == UserRole.PROVIDER


def is_requester(role) -> bool:
    return normalize_role(role) == UserRole.CLIENT


def support_sender_role(role) -> SupportSenderRole:
    normalized = normalize_role(role)
    if normalized is None:
        raise ValueError(f"unknown role: {role!r}")
    return SUPPORT_SENDER_ROLES[normalized]
