"""Mutation Coordinator: publishes and withdraws subdomains as one logical change.

A change touches three systems that cannot share a transaction: the
cloudflared route file, Cloudflare DNS and Access, and the daemon. Each
mutation runs as a saga under the host lock:

    route file -> DNS record -> access policy -> daemon restart

and any failure undoes the applied steps in reverse order before the
error reaches the caller.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from types import TracebackType
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..access import AccessGrant, AccessLevel, AccessLevelKind, AccessPolicyManager
from ..cloudflare import CloudflareClient
from ..common.exceptions import (
    CloudflareAPIError,
    ConflictError,
    NotExposedError,
    PreconditionError,
    ValidationError,
)
from ..common.logging import get_logger
from ..common.utils import (
    is_port_listening,
    parse_duration,
    validate_port,
    validate_subdomain,
)
from ..config import OrbSettings
from ..dns import DNSGateway
from ..lock import HostLock
from ..routes import (
    DEFAULT_SERVICE_TYPE,
    IngressRule,
    RouteSet,
    RouteStore,
    ServiceType,
    target_for,
)
from ..service import ServiceController, ServiceState
from .saga import Saga, SagaState

logger = get_logger(__name__)

# Connectionless, so a local listener cannot be detected
UNCHECKED_SERVICE_TYPES = frozenset({ServiceType.UDP})


class Outcome(str, Enum):
    """Whether a mutation changed anything."""

    CONFIGURED = "configured"
    ALREADY_CONFIGURED = "already_configured"


class MutationResult(BaseModel):
    """Successful result of a coordinator mutation."""

    model_config = ConfigDict(frozen=True)

    operation: str
    outcome: Outcome
    hostname: str
    target: str | None = None
    access: AccessLevel = Field(default_factory=AccessLevel.public)
    expires_at: datetime | None = None
    state: SagaState = SagaState.COMMITTED
    warnings: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.CONFIGURED

    def describe(self) -> str:
        """One-line human summary."""
        if not self.changed:
            return f"{self.hostname} already configured (no changes needed)"
        if self.operation == "unexpose":
            return f"Removed {self.hostname}"
        if self.operation == "revoke_access":
            return f"Revoked group access to {self.hostname} (now {self.access})"
        return f"Configured {self.hostname} -> {self.target} ({self.access})"


class RouteStatus(BaseModel):
    """One exposed hostname with its probe result."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    target: str
    access: AccessLevel = Field(default_factory=AccessLevel.public)
    reachable: bool = False
    status_code: int | None = None
    error: str | None = None

    @property
    def url(self) -> str:
        return f"https://{self.hostname}"


class ExpiryScheduler(Protocol):
    """External collaborator that revokes group access once it expires."""

    def schedule_revocation(self, subdomain: str, expires_at: datetime) -> None: ...


class MutationCoordinator:
    """Sequences route, DNS, access and daemon changes as a saga."""

    def __init__(
        self,
        domain: str,
        store: RouteStore,
        dns: DNSGateway,
        service: ServiceController,
        access: AccessPolicyManager,
        lock: HostLock,
        identity: str | None = None,
        scheduler: ExpiryScheduler | None = None,
        probe_timeout: float = 5.0,
        probe_transport: httpx.BaseTransport | None = None,
        resources: list[Any] | None = None,
        port_check: Callable[[int], bool] = is_port_listening,
    ):
        """Initialize the coordinator with its collaborators.

        Args:
            domain: Base domain; subdomains are published under it
            store: Route file store
            dns: DNS gateway
            service: Tunnel daemon controller
            access: Access policy manager
            lock: Host-wide mutation lock
            identity: Operator email used for the owner rule
            scheduler: Optional receiver of group-access expiries
            probe_timeout: Seconds allowed per reachability probe
            probe_transport: Optional httpx transport for probes (tests)
            resources: Objects with ``close()`` owned by this coordinator
            port_check: Tells whether a local port has a listener
        """
        self.domain = domain.lower().strip(".")
        self.store = store
        self.dns = dns
        self.service = service
        self.access = access
        self.lock = lock
        self.identity = identity
        self.scheduler = scheduler
        self.probe_timeout = probe_timeout
        self._probe_transport = probe_transport
        self._resources = list(resources or [])
        self.port_check = port_check

    def hostname_for(self, subdomain: str) -> str:
        return f"{subdomain}.{self.domain}"

    # Validation (pure, before the lock)

    @staticmethod
    def _service_type(value: ServiceType | str) -> ServiceType:
        if isinstance(value, ServiceType):
            return value
        try:
            return ServiceType(str(value).lower())
        except ValueError:
            valid = ", ".join(t.value for t in ServiceType)
            raise ValidationError(
                f"Invalid service type {value!r}: expected one of {valid}"
            ) from None

    @staticmethod
    def _expiry(level: AccessLevel, expires: str | None) -> datetime | None:
        if not expires:
            return None
        if level.kind != AccessLevelKind.GROUP:
            raise ValidationError(
                "--expires only applies to group access; it reverts to private afterwards"
            )
        return datetime.now(timezone.utc) + parse_duration(expires)

    def _require_identity(self, level: AccessLevel) -> str:
        if self.identity:
            return self.identity
        if not level.is_public:
            raise ValidationError(
                f"{level} access needs your email; set USER_EMAIL in ~/.config/orb/.env"
            )
        return ""

    def _require_listener(self, port: int, kind: ServiceType, check_port: bool) -> None:
        if not check_port or kind in UNCHECKED_SERVICE_TYPES:
            return
        if not self.port_check(port):
            raise PreconditionError(
                f"nothing listening on 127.0.0.1:{port}; start your service first "
                "or pass check_port=False"
            )

    # Saga plumbing

    @contextmanager
    def _locked(self, saga: Saga) -> Iterator[None]:
        with self.lock.hold():
            saga.transition(SagaState.LOCK_HELD)
            yield

    def _load(self) -> tuple[bytes, RouteSet]:
        raw = self.store.read_bytes()
        routes = self.store.parse(raw)
        routes.ensure_catch_all_invariant()
        return raw, routes

    def _route_step(self, saga: Saga, raw: bytes, updated: RouteSet) -> None:
        with saga.step("route", SagaState.ROUTE_APPLIED) as step:
            self.store.save(updated)
            step.compensate(
                lambda: self.store.restore(raw),
                system=f"route file {self.store.path}",
                prior_state=raw,
            )

    def _restart_step(self, saga: Saga) -> None:
        with saga.step("service", SagaState.SERVICE_RESTARTED):
            self.service.restart()

    def _undo_dns(self, tunnel_id: str, hostname: str) -> Callable[[], Any]:
        return lambda: self.dns.remove_route(tunnel_id, hostname)

    def _current_access(self, hostname: str) -> AccessLevel:
        grant = self.access.snapshot(hostname)
        return grant.level if grant is not None else AccessLevel.public()

    def _undo_access(self, hostname: str, prior: AccessGrant | None) -> Callable[[], Any]:
        if prior is None:
            return lambda: self.access.remove(hostname)
        return lambda: self.access.restore(prior, self.identity)

    @staticmethod
    def _unchanged(
        saga: Saga, hostname: str, target: str | None = None, access: AccessLevel | None = None
    ) -> MutationResult:
        saga.commit()
        logger.info("Already configured", operation=saga.operation, hostname=hostname)
        return MutationResult(
            operation=saga.operation,
            outcome=Outcome.ALREADY_CONFIGURED,
            hostname=hostname,
            target=target,
            access=access or AccessLevel.public(),
            state=saga.state,
        )

    # Mutations

    def expose(
        self,
        subdomain: str,
        port: int | str,
        service_type: ServiceType | str = DEFAULT_SERVICE_TYPE,
        access: str | AccessLevel | None = "public",
        expires: str | None = None,
        check_port: bool = True,
    ) -> MutationResult:
        """Publish ``subdomain`` for a local port.

        Args:
            subdomain: DNS label under the base domain
            port: Local port the service listens on
            service_type: Origin protocol (http, https, tcp, ...)
            access: ``public``, ``private`` or a group name
            expires: Optional group-access lifetime such as ``24h``
            check_port: Refuse to expose a port nothing listens on

        Returns:
            CONFIGURED on change, ALREADY_CONFIGURED for an identical repeat

        Raises:
            ValidationError: Bad input, nothing touched
            PreconditionError: Nothing listens on the port, or the route
                file violates its invariants
            LockTimeout: Another invocation holds the lock
            ConflictError: The hostname points at another target, is already
                exposed with different access, or has a foreign DNS record
            StepFailure: A step failed and was rolled back
            CompensationFailure: A step failed and rollback was incomplete
        """
        subdomain = validate_subdomain(subdomain)
        port = validate_port(port)
        kind = self._service_type(service_type)
        level = access if isinstance(access, AccessLevel) else AccessLevel.parse(access)
        expires_at = self._expiry(level, expires)
        identity = self._require_identity(level)
        self._require_listener(port, kind, check_port)

        hostname = self.hostname_for(subdomain)
        target = target_for(port, kind)
        saga = Saga("expose")
        log = logger.bind(hostname=hostname, target=target, access=str(level))

        with self._locked(saga):
            raw, routes = self._load()

            index = routes.find_by_hostname(hostname)
            if index is not None:
                existing = routes.ingress[index].target
                if existing == target:
                    current = self._current_access(hostname)
                    if current != level:
                        raise ConflictError(
                            f"{hostname} is already exposed with {current} access. Run "
                            f"`orb tunnel unexpose {subdomain}` first to change it"
                        )
                    return self._unchanged(saga, hostname, target, current)
                raise ConflictError(
                    f"{hostname} is already mapped to {existing}. Run "
                    f"`orb tunnel unexpose {subdomain}` first, or use a different subdomain"
                )

            updated = routes.insert_before_catch_all(
                IngressRule(hostname=hostname, target=target)
            )
            self._route_step(saga, raw, updated)

            with saga.step("dns", SagaState.DNS_APPLIED) as step:
                undo_dns = self._undo_dns(routes.tunnel, hostname)
                try:
                    created = self.dns.create_route(routes.tunnel, hostname)
                except CloudflareAPIError as e:
                    # A write that may have landed is removed; a refused one leaves
                    # any pre-existing record alone.
                    if e.in_doubt:
                        step.compensate(undo_dns, system=f"DNS record for {hostname}")
                    raise
                if created:
                    step.compensate(undo_dns, system=f"DNS record for {hostname}")

            if not level.is_public:
                with saga.step("access", SagaState.POLICY_APPLIED) as step:
                    prior = self.access.snapshot(hostname)
                    step.compensate(
                        self._undo_access(hostname, prior),
                        system=f"access policy for {hostname}",
                        prior_state=prior,
                    )
                    self.access.grant(hostname, level, identity)

            self._restart_step(saga)
            saga.commit()

        log.info("Exposed")
        warnings = self._schedule_expiry(subdomain, expires_at)
        return MutationResult(
            operation=saga.operation,
            outcome=Outcome.CONFIGURED,
            hostname=hostname,
            target=target,
            access=level,
            expires_at=expires_at,
            state=saga.state,
            warnings=warnings,
        )

    def unexpose(self, subdomain: str) -> MutationResult:
        """Withdraw ``subdomain``: route, DNS record and access policy.

        Raises:
            NotExposedError: The subdomain has no ingress rule
        """
        subdomain = validate_subdomain(subdomain)
        hostname = self.hostname_for(subdomain)
        saga = Saga("unexpose")

        with self._locked(saga):
            raw, routes = self._load()
            index = routes.find_by_hostname(hostname)
            if index is None:
                raise NotExposedError(f"{hostname} is not currently exposed")
            previous_target = routes.ingress[index].target

            self._route_step(saga, raw, routes.remove_at(index))

            with saga.step("dns", SagaState.DNS_APPLIED) as step:
                if self.dns.remove_route(routes.tunnel, hostname):
                    step.compensate(
                        lambda: self.dns.create_route(routes.tunnel, hostname),
                        system=f"DNS record for {hostname}",
                    )

            with saga.step("access", SagaState.POLICY_APPLIED) as step:
                prior = self.access.remove(hostname)
                if prior is not None:
                    step.compensate(
                        lambda: self.access.restore(prior, self.identity),
                        system=f"access policy for {hostname}",
                        prior_state=prior,
                    )

            self._restart_step(saga)
            saga.commit()

        logger.info("Unexposed", hostname=hostname, was=previous_target)
        return MutationResult(
            operation=saga.operation,
            outcome=Outcome.CONFIGURED,
            hostname=hostname,
            target=previous_target,
            access=prior.level if prior is not None else AccessLevel.public(),
            state=saga.state,
        )

    def update(
        self,
        subdomain: str,
        port: int | str,
        service_type: ServiceType | str = DEFAULT_SERVICE_TYPE,
    ) -> MutationResult:
        """Point an exposed subdomain at a different local port or protocol.

        DNS and access are keyed by hostname, which does not change.
        """
        subdomain = validate_subdomain(subdomain)
        port = validate_port(port)
        kind = self._service_type(service_type)
        hostname = self.hostname_for(subdomain)
        target = target_for(port, kind)
        saga = Saga("update")

        with self._locked(saga):
            raw, routes = self._load()
            index = routes.find_by_hostname(hostname)
            if index is None:
                raise NotExposedError(
                    f"No ingress rule found for subdomain {subdomain!r}; expose it first"
                )
            current = self._current_access(hostname)
            if routes.ingress[index].target == target:
                return self._unchanged(saga, hostname, target, current)

            self._route_step(saga, raw, routes.replace_target(hostname, target))
            self._restart_step(saga)
            saga.commit()

        logger.info("Updated", hostname=hostname, target=target)
        return MutationResult(
            operation=saga.operation,
            outcome=Outcome.CONFIGURED,
            hostname=hostname,
            target=target,
            access=current,
            state=saga.state,
        )

    def revoke_access(self, subdomain: str) -> MutationResult:
        """Drop group access to ``subdomain``, leaving it private to the owner.

        Raises:
            NotExposedError: The subdomain has no ingress rule
            PreconditionError: The subdomain is public, so there is nothing to revoke
        """
        subdomain = validate_subdomain(subdomain)
        hostname = self.hostname_for(subdomain)
        saga = Saga("revoke_access")

        with self._locked(saga):
            _, routes = self._load()
            if routes.find_by_hostname(hostname) is None:
                raise NotExposedError(f"{hostname} is not currently exposed")

            prior = self.access.snapshot(hostname)
            if prior is None:
                raise PreconditionError(
                    f"{hostname} is public; there is no access policy to revoke"
                )
            if prior.level.kind != AccessLevelKind.GROUP:
                return self._unchanged(saga, hostname, access=prior.level)

            with saga.step("access", SagaState.POLICY_APPLIED) as step:
                step.compensate(
                    lambda: self.access.restore(prior, self.identity),
                    system=f"access policy for {hostname}",
                    prior_state=prior,
                )
                self.access.revoke_group(hostname)
            saga.commit()

        logger.info("Group access revoked", hostname=hostname, group=prior.level.group)
        return MutationResult(
            operation=saga.operation,
            outcome=Outcome.CONFIGURED,
            hostname=hostname,
            access=AccessLevel.private(),
            state=saga.state,
        )

    def _schedule_expiry(
        self, subdomain: str, expires_at: datetime | None
    ) -> tuple[str, ...]:
        if expires_at is None:
            return ()
        if self.scheduler is None:
            return (
                f"No scheduler configured; run `orb tunnel revoke-access {subdomain}` "
                f"after {expires_at.isoformat()}",
            )
        try:
            self.scheduler.schedule_revocation(subdomain, expires_at)
        except Exception as e:
            # The exposure is committed; only the automatic revocation is missing.
            logger.error("Failed to schedule access expiry", subdomain=subdomain, error=str(e))
            return (f"Failed to schedule access expiry: {e}",)
        logger.info("Access expiry scheduled", subdomain=subdomain, at=expires_at.isoformat())
        return ()

    # Read-only operations (no lock)

    def _probe(self, client: httpx.Client, rule: IngressRule) -> RouteStatus:
        access = self.access.describe(rule.hostname)
        try:
            response = client.get(f"https://{rule.hostname}/")
        except httpx.HTTPError as e:
            return RouteStatus(
                hostname=rule.hostname, target=rule.target, access=access, error=str(e)
            )
        return RouteStatus(
            hostname=rule.hostname,
            target=rule.target,
            access=access,
            reachable=response.status_code < 500,
            status_code=response.status_code,
        )

    def _probe_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.probe_timeout,
            follow_redirects=False,
            transport=self._probe_transport,
        )

    def list_routes(self) -> list[RouteStatus]:
        """Every exposed hostname with access level and a reachability probe."""
        routes = self.store.load()
        with self._probe_client() as client:
            return [self._probe(client, rule) for rule in routes.exposed()]

    def health(self, subdomain: str) -> RouteStatus:
        """Probe one exposed subdomain."""
        subdomain = validate_subdomain(subdomain)
        hostname = self.hostname_for(subdomain)
        routes = self.store.load()
        index = routes.find_by_hostname(hostname)
        if index is None:
            raise NotExposedError(f"{hostname} is not currently exposed")
        with self._probe_client() as client:
            return self._probe(client, routes.ingress[index])

    def status(self) -> ServiceState:
        return self.service.status()

    def restart(self) -> None:
        self.service.restart()

    def logs(
        self, subdomain: str | None = None, lines: int = 50, follow: bool = False
    ) -> Iterator[str]:
        """Daemon log lines, optionally only those mentioning a subdomain."""
        grep = None
        if subdomain:
            grep = self.hostname_for(validate_subdomain(subdomain))
        return self.service.logs(lines=lines, follow=follow, grep=grep)

    def close(self) -> None:
        for resource in self._resources:
            resource.close()
        self._resources.clear()

    def __enter__(self) -> "MutationCoordinator":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.close()
        return False


def build_coordinator(
    settings: OrbSettings, scheduler: ExpiryScheduler | None = None
) -> MutationCoordinator:
    """Wire a coordinator to the real route file, Cloudflare and systemd."""
    client = CloudflareClient(
        settings.api_token.get_secret_value(), base_url=settings.api_base
    )
    return MutationCoordinator(
        domain=settings.domain,
        store=RouteStore(settings.config_path),
        dns=DNSGateway(client, settings.zone_id),
        service=ServiceController(settings.service_unit, use_sudo=settings.use_sudo),
        access=AccessPolicyManager(client, settings.account_id),
        lock=HostLock(settings.lock_path, timeout=settings.lock_timeout),
        identity=settings.user_email,
        scheduler=scheduler,
        probe_timeout=settings.probe_timeout,
        resources=[client],
    )
