"""orb - publish local services on named subdomains through a Cloudflare Tunnel."""

from .access import AccessGrant, AccessLevel, AccessPolicyManager
from .cloudflare import CloudflareClient
from .common.exceptions import (
    CompensationFailure,
    ConflictError,
    LockTimeout,
    NotExposedError,
    OrbError,
    PreconditionError,
    StepFailure,
    ValidationError,
)
from .common.logging import get_logger, setup_logging
from .config import OrbSettings
from .coordinator import (
    MutationCoordinator,
    MutationResult,
    Outcome,
    RouteStatus,
    SagaState,
    build_coordinator,
)
from .dns import DNSGateway
from .lock import HostLock
from .routes import IngressRule, RouteSet, RouteStore, ServiceType
from .service import ServiceController, ServiceState

__version__ = "0.1.0"


__all__ = [
    # Coordinator
    "MutationCoordinator",
    "MutationResult",
    "Outcome",
    "RouteStatus",
    "SagaState",
    "build_coordinator",
    # Collaborators
    "RouteStore",
    "RouteSet",
    "IngressRule",
    "ServiceType",
    "DNSGateway",
    "CloudflareClient",
    "ServiceController",
    "ServiceState",
    "AccessPolicyManager",
    "AccessLevel",
    "AccessGrant",
    "HostLock",
    # Configuration
    "OrbSettings",
    # Exceptions
    "OrbError",
    "ValidationError",
    "PreconditionError",
    "NotExposedError",
    "ConflictError",
    "StepFailure",
    "CompensationFailure",
    "LockTimeout",
    # Logging
    "get_logger",
    "setup_logging",
]
