"""Loading and atomically saving the cloudflared ingress configuration."""

import os
import tempfile
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..common.exceptions import (
    CorruptRouteSetError,
    RouteStoreIOError,
    RouteStoreNotFoundError,
    RouteStorePermissionError,
)
from ..common.logging import get_logger
from .models import RouteSet

logger = get_logger(__name__)


class RouteStore:
    """File-backed store for the tunnel's RouteSet.

    The file is the single source of truth: nothing is cached between
    calls, and writes replace the whole file through a rename so readers
    only ever see the old or the new content.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read_bytes(self) -> bytes:
        """Raw file content, used as the rollback snapshot.

        Raises:
            RouteStoreNotFoundError: If the file does not exist
            RouteStorePermissionError: If the file is not readable
        """
        try:
            return self.path.read_bytes()
        except FileNotFoundError as e:
            raise RouteStoreNotFoundError(
                f"cloudflared config not found at {self.path}"
            ) from e
        except PermissionError as e:
            raise RouteStorePermissionError(
                f"Permission denied reading {self.path} - try with sudo"
            ) from e
        except OSError as e:
            raise RouteStoreIOError(f"Failed to read {self.path}: {e}") from e

    def parse(self, data: bytes) -> RouteSet:
        """Parse file content into a RouteSet.

        Raises:
            CorruptRouteSetError: On invalid YAML or an unexpected layout
        """
        try:
            document = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise CorruptRouteSetError(f"Invalid YAML in {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise CorruptRouteSetError(f"{self.path} does not contain a YAML mapping")
        if not isinstance(document.get("ingress", []), list):
            raise CorruptRouteSetError(f"'ingress' in {self.path} must be a list")

        try:
            return RouteSet.model_validate(document)
        except PydanticValidationError as e:
            raise CorruptRouteSetError(f"Invalid config in {self.path}: {e}") from e

    def load(self) -> RouteSet:
        """Read and parse the current RouteSet from disk."""
        route_set = self.parse(self.read_bytes())
        logger.debug(
            "Route set loaded", path=str(self.path), rules=len(route_set.ingress)
        )
        return route_set

    @staticmethod
    def serialize(route_set: RouteSet) -> bytes:
        """Deterministic YAML rendering of a RouteSet."""
        text = yaml.safe_dump(
            route_set.to_dict(),
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        return text.encode("utf-8")

    def save(self, route_set: RouteSet) -> None:
        """Validate and atomically write a RouteSet."""
        route_set.ensure_catch_all_invariant()
        self.write_bytes(self.serialize(route_set))
        logger.info("Route set saved", path=str(self.path), rules=len(route_set.ingress))

    def restore(self, data: bytes) -> None:
        """Atomically put back a snapshot taken with read_bytes()."""
        self.write_bytes(data)
        logger.info("Route set restored from snapshot", path=str(self.path))

    def write_bytes(self, data: bytes) -> None:
        """Write to a sibling temp file, then rename it over the target.

        Raises:
            RouteStorePermissionError: If the directory is not writable
            RouteStoreIOError: If writing or renaming fails
        """
        directory = self.path.parent
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=directory, prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except PermissionError as e:
            raise RouteStorePermissionError(
                f"Permission denied writing to {directory} - try with sudo"
            ) from e
        except OSError as e:
            raise RouteStoreIOError(f"Failed to create temp file in {directory}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            self._copy_mode(temp_path)
            os.replace(temp_path, self.path)
        except Exception as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            if isinstance(e, PermissionError):
                raise RouteStorePermissionError(
                    f"Permission denied replacing {self.path} - try with sudo"
                ) from e
            if isinstance(e, OSError):
                raise RouteStoreIOError(f"Failed to replace {self.path}: {e}") from e
            raise

    def _copy_mode(self, temp_path: str) -> None:
        """mkstemp creates 0600 files; keep the target's permissions instead."""
        try:
            mode = self.path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644
        os.chmod(temp_path, mode)
