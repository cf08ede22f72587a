"""DNS Gateway: CNAME records pointing public hostnames at the tunnel."""

from typing import Any

from .cloudflare import CloudflareClient
from .common.exceptions import CloudflareAPIError, ConflictError
from .common.logging import get_logger

logger = get_logger(__name__)

RECORD_TYPE = "CNAME"
TUNNEL_TARGET_SUFFIX = "cfargotunnel.com"

# Cloudflare error codes meaning "a record with this name already exists"
ALREADY_EXISTS_CODES = frozenset({81053, 81057, 81058})


def tunnel_target(tunnel_id: str) -> str:
    """CNAME content for a tunnel, e.g. ``<id>.cfargotunnel.com``."""
    return f"{tunnel_id}.{TUNNEL_TARGET_SUFFIX}"


class DNSGateway:
    """Idempotent create/remove of tunnel CNAME records in one zone."""

    def __init__(self, client: CloudflareClient, zone_id: str):
        if not zone_id:
            raise ValueError("Zone ID cannot be empty")
        self._client = client
        self.zone_id = zone_id

    @property
    def _records_path(self) -> str:
        return f"zones/{self.zone_id}/dns_records"

    def find_route(self, hostname: str) -> list[dict[str, Any]]:
        """CNAME records currently published for ``hostname``."""
        return self._client.paginate(
            self._records_path, params={"type": RECORD_TYPE, "name": hostname}
        )

    def create_route(self, tunnel_id: str, hostname: str) -> bool:
        """Publish a proxied CNAME for ``hostname``.

        Returns:
            True if a record was created, False if this tunnel's record
            already existed

        Raises:
            ConflictError: If the name is taken by a record pointing elsewhere
            CloudflareAuthError: If the token is rejected
            CloudflareRateLimitError: If the API rate limit is exceeded
            CloudflareAPIError: On any other provider failure
        """
        payload = {
            "type": RECORD_TYPE,
            "name": hostname,
            "content": tunnel_target(tunnel_id),
            "proxied": True,
            "ttl": 1,
            "comment": "managed by orb",
        }
        try:
            self._client.request("POST", self._records_path, json=payload)
        except CloudflareAPIError as e:
            if not ALREADY_EXISTS_CODES.intersection(e.codes):
                raise
            self._require_own_record(tunnel_id, hostname)
            logger.info("DNS route already exists", hostname=hostname)
            return False

        logger.info("DNS route created", hostname=hostname, tunnel=tunnel_id)
        return True

    def _require_own_record(self, tunnel_id: str, hostname: str) -> None:
        target = tunnel_target(tunnel_id)
        records = self.find_route(hostname)
        if any(record.get("content") == target for record in records):
            return
        existing = ", ".join(str(record.get("content")) for record in records)
        raise ConflictError(
            f"{hostname} already has a DNS record that does not point at this tunnel "
            f"({existing or 'a non-CNAME record'}); remove it in the Cloudflare dashboard first"
        )

    def remove_route(self, tunnel_id: str, hostname: str) -> bool:
        """Delete the CNAME records for ``hostname``.

        A missing record is not an error, so this also serves as the undo of
        a create that never reached the provider.

        Returns:
            True if at least one record was deleted, False if none existed
        """
        records = self.find_route(hostname)
        if not records:
            logger.info("No DNS route to remove", hostname=hostname)
            return False

        target = tunnel_target(tunnel_id)
        for record in records:
            if record.get("content") != target:
                logger.warning(
                    "Removing DNS record that points elsewhere",
                    hostname=hostname,
                    content=record.get("content"),
                )
            try:
                self._client.request("DELETE", f"{self._records_path}/{record['id']}")
            except CloudflareAPIError as e:
                # 81044: record already deleted by someone else
                if e.status_code == 404 or 81044 in e.codes:
                    continue
                raise

        logger.info("DNS route removed", hostname=hostname, records=len(records))
        return True
