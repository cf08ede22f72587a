"""Custom exceptions for orb."""


class OrbError(Exception):
    """Base exception for all orb errors."""

    pass


# Coordinator-level taxonomy


class ValidationError(OrbError):
    """Raised when caller input is malformed. Nothing has been touched."""

    pass


class PreconditionError(OrbError):
    """Raised when current state forbids the requested change."""

    pass


class InvariantViolation(PreconditionError):
    """Raised when the route file does not end with a catch-all rule."""

    pass


class NotExposedError(PreconditionError):
    """Raised when a subdomain has no ingress rule."""

    pass


class ConflictError(OrbError):
    """Raised when a hostname is already mapped to a different target."""

    pass


class LockTimeout(OrbError):
    """Raised when the host lock could not be acquired in time."""

    pass


class StepFailure(OrbError):
    """Raised when one saga step failed and earlier steps were rolled back."""

    def __init__(self, operation: str, step: str, cause: BaseException, reverted: list[str]):
        self.operation = operation
        self.step = step
        self.cause = cause
        self.reverted = list(reverted)
        message = f"{operation} failed at step '{step}': {cause}"
        if self.reverted:
            message += f" (rolled back: {', '.join(self.reverted)})"
        super().__init__(message)


class CompensationFailure(OrbError):
    """Raised when rollback itself failed, leaving external state inconsistent."""

    def __init__(
        self,
        operation: str,
        step: str,
        cause: BaseException,
        unreverted: dict[str, str],
        reverted: list[str],
    ):
        self.operation = operation
        self.step = step
        self.cause = cause
        self.unreverted = dict(unreverted)
        self.reverted = list(reverted)
        lines = [
            f"{operation} failed at step '{step}': {cause}",
            "automatic rollback did not complete; manual action required for:",
        ]
        lines.extend(f"  - {name}: {detail}" for name, detail in self.unreverted.items())
        super().__init__("\n".join(lines))


# Collaborator errors


class RouteStoreError(OrbError):
    """Base exception for route file operations."""

    pass


class RouteStoreNotFoundError(RouteStoreError):
    """Raised when the route file does not exist."""

    pass


class RouteStorePermissionError(RouteStoreError):
    """Raised when the route file cannot be read or written."""

    pass


class CorruptRouteSetError(RouteStoreError):
    """Raised when the route file cannot be parsed into a route set."""

    pass


class RouteStoreIOError(RouteStoreError):
    """Raised when writing the route file fails for other reasons."""

    pass


class CloudflareAPIError(OrbError):
    """Raised when a Cloudflare API call fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        codes: list[int] | None = None,
        in_doubt: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.codes = codes or []
        # The request may have reached the provider before the failure.
        self.in_doubt = in_doubt


class CloudflareAuthError(CloudflareAPIError):
    """Raised when the API token is rejected."""

    pass


class CloudflareRateLimitError(CloudflareAPIError):
    """Raised when the API rate limit is exceeded."""

    pass


class AccessError(OrbError):
    """Base exception for access policy operations."""

    pass


class AccessGroupNotFoundError(AccessError):
    """Raised when a named access group does not exist."""

    pass


class AccessGroupExistsError(AccessError):
    """Raised when creating a group that already exists."""

    pass


class AccessPolicyNotFoundError(AccessError):
    """Raised when a hostname has no access application."""

    pass


class ServiceError(OrbError):
    """Raised when tunnel daemon control fails."""

    pass


class ServicePermissionError(ServiceError):
    """Raised when the service manager denies the operation."""

    pass


class ServiceNotFoundError(ServiceError):
    """Raised when the unit or the service manager binary is missing."""

    pass
