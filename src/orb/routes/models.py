"""Ingress rule models for the cloudflared configuration file."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..common.exceptions import InvariantViolation


class ServiceType(str, Enum):
    """Origin protocols cloudflared can forward to."""

    HTTP = "http"
    HTTPS = "https"
    TCP = "tcp"
    UDP = "udp"
    SSH = "ssh"
    RDP = "rdp"
    SMB = "smb"
    UNIX = "unix"


DEFAULT_SERVICE_TYPE = ServiceType.HTTP


def target_for(port: int, service_type: ServiceType | str = DEFAULT_SERVICE_TYPE) -> str:
    """Build the local target URI for a port, e.g. ``http://localhost:8080``."""
    return f"{ServiceType(service_type).value}://localhost:{port}"


class IngressRule(BaseModel):
    """A single hostname-to-target mapping; an empty hostname is the catch-all.

    Keys cloudflared understands but orb does not touch (``originRequest``,
    ``path``, ...) are kept as extra fields and written back unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    hostname: str = Field(default="", description="Public hostname, empty for catch-all")
    target: str = Field(alias="service", min_length=1, description="Origin URI")

    @field_validator("hostname", mode="before")
    @classmethod
    def normalize_hostname(cls, v: Any) -> str:
        """Missing and null hostnames both mean catch-all."""
        return "" if v is None else str(v).strip().lower()

    @property
    def is_catch_all(self) -> bool:
        """True for the unconditional default rule."""
        return self.hostname == ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize in cloudflared's key layout."""
        data: dict[str, Any] = {}
        if self.hostname:
            data["hostname"] = self.hostname
        data["service"] = self.target
        if self.model_extra:
            data.update(self.model_extra)
        return data


class RouteSet(BaseModel):
    """The ordered ingress rules of one tunnel plus the tunnel identifier.

    Instances are treated as values: every mutating helper returns a new
    RouteSet and never touches the file on disk.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    tunnel: str = Field(min_length=1, description="Provider-assigned tunnel id")
    credentials_file: str | None = Field(default=None, alias="credentials-file")
    ingress: tuple[IngressRule, ...] = Field(default=())

    @field_validator("tunnel", mode="before")
    @classmethod
    def coerce_tunnel(cls, v: Any) -> Any:
        """YAML may load a bare UUID-ish id as a non-string."""
        return str(v) if v is not None else v

    @field_validator("ingress")
    @classmethod
    def validate_unique_hostnames(
        cls, v: tuple[IngressRule, ...]
    ) -> tuple[IngressRule, ...]:
        """Non-empty hostnames must be unique."""
        seen: set[str] = set()
        for rule in v:
            if rule.is_catch_all:
                continue
            if rule.hostname in seen:
                raise ValueError(f"Duplicate ingress hostname '{rule.hostname}'")
            seen.add(rule.hostname)
        return v

    def find_by_hostname(self, hostname: str) -> int | None:
        """Index of the rule for ``hostname`` or None if not present."""
        hostname = hostname.lower()
        for index, rule in enumerate(self.ingress):
            if hostname and rule.hostname == hostname:
                return index
        return None

    def ensure_catch_all_invariant(self) -> None:
        """Check the rule list is non-empty and ends with the catch-all.

        Raises:
            InvariantViolation: The file is never repaired automatically
        """
        if not self.ingress:
            raise InvariantViolation(
                "Config has no ingress rules; add a catch-all rule "
                "(e.g. `- service: http_status:404`) first"
            )
        last = self.ingress[-1]
        if not last.is_catch_all:
            raise InvariantViolation(
                "Last ingress rule must be a catch-all (no hostname), "
                f"got hostname={last.hostname!r}"
            )
        for rule in self.ingress[:-1]:
            if rule.is_catch_all:
                raise InvariantViolation(
                    "Only the last ingress rule may be a catch-all; "
                    "rules after it would never match"
                )

    def insert_before_catch_all(self, rule: IngressRule) -> "RouteSet":
        """New RouteSet with ``rule`` placed just before the catch-all."""
        self.ensure_catch_all_invariant()
        if rule.is_catch_all:
            raise ValueError("Cannot insert a second catch-all rule")
        if self.find_by_hostname(rule.hostname) is not None:
            raise ValueError(f"Hostname '{rule.hostname}' already has a rule")
        rules = self.ingress[:-1] + (rule,) + self.ingress[-1:]
        return self.model_copy(update={"ingress": rules})

    def replace_target(self, hostname: str, target: str) -> "RouteSet":
        """New RouteSet with the rule for ``hostname`` pointing at ``target``."""
        index = self.find_by_hostname(hostname)
        if index is None:
            raise KeyError(hostname)
        updated = self.ingress[index].model_copy(update={"target": target})
        rules = self.ingress[:index] + (updated,) + self.ingress[index + 1 :]
        return self.model_copy(update={"ingress": rules})

    def remove_at(self, index: int) -> "RouteSet":
        """New RouteSet without the rule at ``index``; the catch-all stays."""
        if self.ingress[index].is_catch_all:
            raise ValueError("The catch-all rule cannot be removed")
        rules = self.ingress[:index] + self.ingress[index + 1 :]
        return self.model_copy(update={"ingress": rules})

    def exposed(self) -> list[IngressRule]:
        """All rules except the catch-all, in file order."""
        return [rule for rule in self.ingress if not rule.is_catch_all]

    def to_dict(self) -> dict[str, Any]:
        """Serialize in cloudflared's key layout."""
        data: dict[str, Any] = {"tunnel": self.tunnel}
        if self.credentials_file is not None:
            data["credentials-file"] = self.credentials_file
        if self.model_extra:
            data.update(self.model_extra)
        data["ingress"] = [rule.to_dict() for rule in self.ingress]
        return data
