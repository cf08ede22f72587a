"""Access Policy Manager and access level models."""

from .manager import AccessPolicyManager
from .models import (
    GROUP_PRECEDENCE,
    OWNER_PRECEDENCE,
    AccessGrant,
    AccessGroup,
    AccessLevel,
    AccessLevelKind,
    EmailRule,
    GrantReceipt,
    GroupRule,
    parse_include,
)

__all__ = [
    "AccessPolicyManager",
    "AccessGrant",
    "AccessGroup",
    "AccessLevel",
    "AccessLevelKind",
    "EmailRule",
    "GroupRule",
    "GrantReceipt",
    "parse_include",
    "OWNER_PRECEDENCE",
    "GROUP_PRECEDENCE",
]
