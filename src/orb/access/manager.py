"""Access Policy Manager: Cloudflare Access applications and policies per hostname.

Each protected hostname owns one self-hosted Access application. Its
policies are kept in a fixed shape:

* precedence 1: owner rule, matches the operator's email; only removed
  together with the whole application
* precedence 2: group rule, matches one Access group; revocable on its own

A hostname without an application is public.
"""

from typing import Any

from ..cloudflare import CloudflareClient
from ..common.exceptions import (
    AccessGroupExistsError,
    AccessGroupNotFoundError,
    AccessPolicyNotFoundError,
    CloudflareAPIError,
    ValidationError,
)
from ..common.logging import get_logger
from ..common.utils import validate_group_name
from .models import (
    GROUP_PRECEDENCE,
    OWNER_PRECEDENCE,
    AccessGrant,
    AccessGroup,
    AccessLevel,
    EmailRule,
    GrantReceipt,
    GroupRule,
    IncludeRule,
    parse_include,
)

logger = get_logger(__name__)

OWNER_POLICY_NAME = "owner"
GROUP_POLICY_PREFIX = "group:"


class AccessPolicyManager:
    """Maps abstract access levels onto Cloudflare Access objects."""

    def __init__(
        self,
        client: CloudflareClient,
        account_id: str,
        session_duration: str = "24h",
    ):
        if not account_id:
            raise ValueError("Account ID cannot be empty")
        self._client = client
        self.account_id = account_id
        self.session_duration = session_duration

    # Paths

    @property
    def _apps_path(self) -> str:
        return f"accounts/{self.account_id}/access/apps"

    @property
    def _groups_path(self) -> str:
        return f"accounts/{self.account_id}/access/groups"

    def _policies_path(self, app_id: str) -> str:
        return f"{self._apps_path}/{app_id}/policies"

    # Groups

    def list_groups(self) -> list[AccessGroup]:
        """All Access groups in the account."""
        return [
            AccessGroup.from_payload(item)
            for item in self._client.paginate(self._groups_path)
        ]

    def find_group(self, name: str) -> AccessGroup | None:
        """Group with exactly this name, or None."""
        for group in self.list_groups():
            if group.name == name:
                return group
        return None

    def _require_group(self, name: str) -> AccessGroup:
        group = self.find_group(name)
        if group is None:
            raise AccessGroupNotFoundError(
                f"Access group '{name}' not found. Create it first with "
                f"`orb access create {name} <emails>`"
            )
        return group

    def create_group(self, name: str, emails: list[str]) -> AccessGroup:
        """Create a group of email identities.

        Raises:
            ValidationError: If the name or member list is invalid
            AccessGroupExistsError: If a group with this name exists
        """
        name = validate_group_name(name)
        members = _clean_emails(emails)
        if not members:
            raise ValidationError("A group needs at least one email address")
        if self.find_group(name) is not None:
            raise AccessGroupExistsError(f"Access group '{name}' already exists")

        result = self._client.request(
            "POST",
            self._groups_path,
            json={
                "name": name,
                "include": [EmailRule(email=email).to_payload() for email in members],
            },
        )
        logger.info("Access group created", group=name, members=len(members))
        return AccessGroup.from_payload(result)

    def delete_group(self, name: str) -> None:
        """Delete a group by name."""
        group = self._require_group(name)
        self._client.request("DELETE", f"{self._groups_path}/{group.id}")
        logger.info("Access group deleted", group=name)

    def group_members(self, name: str) -> list[str]:
        """Email members of a group."""
        return list(self._require_group(name).members)

    def update_group_members(
        self,
        name: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> list[str]:
        """Add and remove email members; returns the new member list.

        Raises:
            ValidationError: If nothing is requested or the group would be empty
        """
        to_add = _clean_emails(add or [])
        to_remove = {email.lower() for email in _clean_emails(remove or [])}
        if not to_add and not to_remove:
            raise ValidationError("Specify emails to add or remove")

        group = self._require_group(name)
        members = [m for m in group.members if m.lower() not in to_remove]
        for email in to_add:
            if email not in members:
                members.append(email)
        if not members:
            raise ValidationError(
                f"Removing these members would leave '{name}' empty; delete the group instead"
            )

        self._client.request(
            "PUT",
            f"{self._groups_path}/{group.id}",
            json={
                "name": group.name,
                "include": [EmailRule(email=email).to_payload() for email in members],
            },
        )
        logger.info(
            "Access group updated",
            group=name,
            added=len(to_add),
            removed=len(to_remove),
            members=len(members),
        )
        return members

    # Applications and policies

    def _find_application(self, hostname: str) -> dict[str, Any] | None:
        for app in self._client.paginate(self._apps_path):
            if app.get("domain") == hostname:
                return app
        return None

    def _create_application(self, hostname: str) -> dict[str, Any]:
        app = self._client.request(
            "POST",
            self._apps_path,
            json={
                "name": hostname,
                "domain": hostname,
                "type": "self_hosted",
                "session_duration": self.session_duration,
                "app_launcher_visible": False,
            },
        )
        logger.info("Access application created", hostname=hostname, app_id=app["id"])
        return app

    def _policies(self, app_id: str) -> list[dict[str, Any]]:
        return self._client.paginate(self._policies_path(app_id))

    @staticmethod
    def _policy_at(
        policies: list[dict[str, Any]], precedence: int
    ) -> dict[str, Any] | None:
        for policy in policies:
            if policy.get("precedence") == precedence:
                return policy
        return None

    def _upsert_policy(
        self,
        app_id: str,
        existing: dict[str, Any] | None,
        name: str,
        precedence: int,
        rule: IncludeRule,
    ) -> None:
        payload = {
            "name": name,
            "decision": "allow",
            "precedence": precedence,
            "include": [rule.to_payload()],
        }
        if existing is None:
            self._client.request("POST", self._policies_path(app_id), json=payload)
        else:
            self._client.request(
                "PUT", f"{self._policies_path(app_id)}/{existing['id']}", json=payload
            )
        logger.debug("Access policy issued", app_id=app_id, precedence=precedence)

    def _delete_policy(self, app_id: str, policy: dict[str, Any]) -> None:
        self._client.request("DELETE", f"{self._policies_path(app_id)}/{policy['id']}")

    def _grant_from(
        self, hostname: str, policies: list[dict[str, Any]]
    ) -> AccessGrant:
        owner = None
        owner_policy = self._policy_at(policies, OWNER_PRECEDENCE)
        if owner_policy is not None:
            for entry in owner_policy.get("include") or []:
                rule = parse_include(entry)
                if isinstance(rule, EmailRule):
                    owner = rule.email
                    break

        group_policy = self._policy_at(policies, GROUP_PRECEDENCE)
        if group_policy is None:
            return AccessGrant(hostname=hostname, level=AccessLevel.private(), owner=owner)

        rules = [parse_include(entry) for entry in group_policy.get("include") or []]
        group_ids = {rule.group_id for rule in rules if isinstance(rule, GroupRule)}
        name = None
        if group_ids:
            for group in self.list_groups():
                if group.id in group_ids:
                    name = group.name
                    break
        if name is None:
            name = str(group_policy.get("name", "")).removeprefix(GROUP_POLICY_PREFIX)
        return AccessGrant(
            hostname=hostname, level=AccessLevel.for_group(name), owner=owner
        )

    def snapshot(self, hostname: str) -> AccessGrant | None:
        """Current grant for ``hostname``, None if it is public."""
        app = self._find_application(hostname)
        if app is None:
            return None
        return self._grant_from(hostname, self._policies(app["id"]))

    def describe(self, hostname: str) -> AccessLevel:
        """Access level for display; any lookup failure reads as public."""
        try:
            grant = self.snapshot(hostname)
        except Exception as e:
            logger.warning("Could not read access policy", hostname=hostname, error=str(e))
            return AccessLevel.public()
        return grant.level if grant is not None else AccessLevel.public()

    def grant(self, hostname: str, level: AccessLevel, identity: str) -> GrantReceipt:
        """Put ``hostname`` behind the given access level.

        Args:
            hostname: Public hostname to protect
            level: Target access level; public is a no-op
            identity: Operator email for the owner rule

        Returns:
            Receipt describing what changed

        Raises:
            AccessGroupNotFoundError: If the group does not exist
            CloudflareAPIError: If the provider rejects a call
        """
        if level.is_public:
            return GrantReceipt(hostname=hostname)
        if not identity:
            raise ValidationError("An operator email is required for private or group access")

        group: AccessGroup | None = None
        if level.group is not None:
            group = self._require_group(level.group)

        app = self._find_application(hostname)
        created = app is None
        previous: AccessGrant | None = None
        if app is None:
            app = self._create_application(hostname)
            policies: list[dict[str, Any]] = []
        else:
            policies = self._policies(app["id"])
            previous = self._grant_from(hostname, policies)

        self._upsert_policy(
            app["id"],
            self._policy_at(policies, OWNER_PRECEDENCE),
            OWNER_POLICY_NAME,
            OWNER_PRECEDENCE,
            EmailRule(email=identity),
        )

        existing_group_policy = self._policy_at(policies, GROUP_PRECEDENCE)
        if group is not None:
            self._upsert_policy(
                app["id"],
                existing_group_policy,
                f"{GROUP_POLICY_PREFIX}{group.name}",
                GROUP_PRECEDENCE,
                GroupRule(group_id=group.id),
            )
        elif existing_group_policy is not None:
            self._delete_policy(app["id"], existing_group_policy)

        logger.info("Access granted", hostname=hostname, level=str(level))
        return GrantReceipt(
            hostname=hostname, created_application=created, previous=previous
        )

    def revoke_group(self, hostname: str) -> bool:
        """Remove the group rule, leaving the owner rule in place.

        Returns:
            True if a group rule was removed, False if there was none

        Raises:
            AccessPolicyNotFoundError: If the hostname has no application
        """
        app = self._find_application(hostname)
        if app is None:
            raise AccessPolicyNotFoundError(f"No access policy exists for {hostname}")

        policy = self._policy_at(self._policies(app["id"]), GROUP_PRECEDENCE)
        if policy is None:
            logger.info("No group access to revoke", hostname=hostname)
            return False

        self._delete_policy(app["id"], policy)
        logger.info("Group access revoked", hostname=hostname)
        return True

    def remove(self, hostname: str) -> AccessGrant | None:
        """Delete the whole application for ``hostname``.

        Returns:
            The grant that was in force, None if the hostname was public
        """
        app = self._find_application(hostname)
        if app is None:
            return None

        previous = self._grant_from(hostname, self._policies(app["id"]))
        try:
            self._client.request("DELETE", f"{self._apps_path}/{app['id']}")
        except CloudflareAPIError as e:
            if e.status_code != 404:
                raise
        logger.info("Access application removed", hostname=hostname)
        return previous

    def restore(self, grant: AccessGrant, identity: str | None = None) -> None:
        """Bring a hostname back to a previously snapshotted grant.

        The snapshot's own owner email wins over ``identity``.
        """
        if grant.level.is_public:
            self.remove(grant.hostname)
            return
        self.grant(grant.hostname, grant.level, grant.owner or identity or "")


def _clean_emails(emails: list[str]) -> list[str]:
    cleaned: list[str] = []
    for email in emails:
        email = email.strip()
        if not email:
            continue
        if "@" not in email:
            raise ValidationError(f"Invalid email address: {email!r}")
        if email not in cleaned:
            cleaned.append(email)
    return cleaned
