"""Route Store: the cloudflared ingress rule file."""

from .models import (
    DEFAULT_SERVICE_TYPE,
    IngressRule,
    RouteSet,
    ServiceType,
    target_for,
)
from .store import RouteStore

__all__ = [
    "IngressRule",
    "RouteSet",
    "RouteStore",
    "ServiceType",
    "DEFAULT_SERVICE_TYPE",
    "target_for",
]
