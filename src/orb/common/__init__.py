"""Common utilities and shared functionality."""

from .exceptions import (
    AccessError,
    AccessGroupNotFoundError,
    AccessPolicyNotFoundError,
    CloudflareAPIError,
    CloudflareAuthError,
    CloudflareRateLimitError,
    CompensationFailure,
    ConflictError,
    InvariantViolation,
    LockTimeout,
    NotExposedError,
    OrbError,
    PreconditionError,
    RouteStoreError,
    ServiceError,
    StepFailure,
    ValidationError,
)
from .logging import get_logger, setup_logging
from .utils import (
    MAX_PORT,
    MIN_PORT,
    is_port_listening,
    mask_sensitive_data,
    parse_duration,
    sanitize_log_data,
    validate_group_name,
    validate_non_empty_string,
    validate_port,
    validate_subdomain,
)

__all__ = [
    # Exceptions
    "OrbError",
    "ValidationError",
    "PreconditionError",
    "InvariantViolation",
    "NotExposedError",
    "ConflictError",
    "LockTimeout",
    "StepFailure",
    "CompensationFailure",
    "RouteStoreError",
    "CloudflareAPIError",
    "CloudflareAuthError",
    "CloudflareRateLimitError",
    "AccessError",
    "AccessGroupNotFoundError",
    "AccessPolicyNotFoundError",
    "ServiceError",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_subdomain",
    "validate_port",
    "validate_non_empty_string",
    "validate_group_name",
    "parse_duration",
    "is_port_listening",
    "mask_sensitive_data",
    "sanitize_log_data",
    "MIN_PORT",
    "MAX_PORT",
]
