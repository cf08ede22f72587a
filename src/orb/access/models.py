"""Access levels, grants and provider include rules."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..common.exceptions import ValidationError
from ..common.utils import validate_group_name

OWNER_PRECEDENCE = 1
GROUP_PRECEDENCE = 2


class AccessLevelKind(str, Enum):
    """Who may reach a hostname."""

    PUBLIC = "public"  # no access application at all
    PRIVATE = "private"  # operator only
    GROUP = "group"  # operator plus a named group


class AccessLevel(BaseModel):
    """An access level; ``group`` is set exactly when kind is GROUP."""

    model_config = ConfigDict(frozen=True)

    kind: AccessLevelKind = AccessLevelKind.PUBLIC
    group: str | None = None

    @model_validator(mode="after")
    def check_group(self) -> "AccessLevel":
        if self.kind == AccessLevelKind.GROUP and not self.group:
            raise ValueError("Group access requires a group name")
        if self.kind != AccessLevelKind.GROUP and self.group is not None:
            raise ValueError(f"{self.kind.value} access takes no group name")
        return self

    @classmethod
    def public(cls) -> "AccessLevel":
        return cls(kind=AccessLevelKind.PUBLIC)

    @classmethod
    def private(cls) -> "AccessLevel":
        return cls(kind=AccessLevelKind.PRIVATE)

    @classmethod
    def for_group(cls, name: str) -> "AccessLevel":
        return cls(kind=AccessLevelKind.GROUP, group=name)

    @classmethod
    def parse(cls, value: str | None) -> "AccessLevel":
        """Parse ``public``, ``private`` or a group name.

        Raises:
            ValidationError: If the value is neither keyword nor a valid group name
        """
        if value is None or not value.strip():
            return cls.public()
        value = value.strip()
        lowered = value.lower()
        if lowered == AccessLevelKind.PUBLIC.value:
            return cls.public()
        if lowered == AccessLevelKind.PRIVATE.value:
            return cls.private()
        if lowered == AccessLevelKind.GROUP.value:
            raise ValidationError("Use the group's name as the access level, not 'group'")
        return cls.for_group(validate_group_name(value))

    @property
    def is_public(self) -> bool:
        return self.kind == AccessLevelKind.PUBLIC

    def __str__(self) -> str:
        if self.kind == AccessLevelKind.GROUP:
            return f"group:{self.group}"
        return self.kind.value


class AccessGrant(BaseModel):
    """Access level in force for one hostname."""

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    level: AccessLevel = Field(default_factory=AccessLevel.public)
    expires_at: datetime | None = None
    owner: str | None = Field(default=None, description="Email in the owner rule")


class EmailRule(BaseModel):
    """Include rule matching one identity by email."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=3)

    def to_payload(self) -> dict[str, Any]:
        return {"email": {"email": self.email}}


class GroupRule(BaseModel):
    """Include rule matching members of a provider-side group."""

    model_config = ConfigDict(frozen=True)

    group_id: str = Field(min_length=1)

    def to_payload(self) -> dict[str, Any]:
        return {"group": {"id": self.group_id}}


IncludeRule = EmailRule | GroupRule


def parse_include(payload: dict[str, Any]) -> IncludeRule | None:
    """Convert a provider include entry to a rule; unknown kinds give None."""
    if "email" in payload and isinstance(payload["email"], dict):
        return EmailRule(email=payload["email"]["email"])
    if "group" in payload and isinstance(payload["group"], dict):
        return GroupRule(group_id=payload["group"]["id"])
    return None


class GrantReceipt(BaseModel):
    """What a grant call changed, enough to undo it."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    created_application: bool = False
    previous: AccessGrant | None = None


class AccessGroup(BaseModel):
    """Provider-side group of identities, addressed by name."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    members: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessGroup":
        members = []
        for entry in payload.get("include") or []:
            rule = parse_include(entry)
            if isinstance(rule, EmailRule):
                members.append(rule.email)
        return cls(id=payload["id"], name=payload["name"], members=tuple(members))
