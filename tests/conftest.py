"""Shared pytest fixtures for orb tests."""

import itertools
import json
import re
from unittest.mock import Mock

import httpx
import pytest

from orb.access import AccessGrant, AccessLevel, AccessLevelKind, GrantReceipt
from orb.cloudflare import CloudflareClient
from orb.common.exceptions import (
    AccessGroupNotFoundError,
    AccessPolicyNotFoundError,
    CloudflareAPIError,
    ServiceError,
)
from orb.coordinator import MutationCoordinator
from orb.lock import HostLock
from orb.routes import IngressRule, RouteSet, RouteStore
from orb.service import ServiceState

DOMAIN = "example.com"
TUNNEL_ID = "6ff42ae2-765d-4adf-8112-31c55c1551ef"
OWNER = "owner@example.com"


# Route file


@pytest.fixture
def initial_routes():
    """RouteSet containing only the catch-all rule."""
    return RouteSet(
        tunnel=TUNNEL_ID,
        credentials_file=f"/etc/cloudflared/{TUNNEL_ID}.json",
        ingress=(IngressRule(target="http_status:404"),),
    )


@pytest.fixture
def route_file(tmp_path, initial_routes):
    """cloudflared config written in canonical form.

    Returns:
        Path: Path to config.yml
    """
    path = tmp_path / "config.yml"
    path.write_bytes(RouteStore.serialize(initial_routes))
    return path


@pytest.fixture
def store(route_file):
    return RouteStore(route_file)


# In-memory collaborators


class FakeDNS:
    """DNS gateway keeping records in a dict."""

    def __init__(self):
        self.records: dict[str, str] = {}
        self.fail_create: Exception | None = None
        self.fail_remove: Exception | None = None
        self.write_before_failing = False
        self.calls: list[tuple[str, str]] = []

    def create_route(self, tunnel_id, hostname):
        self.calls.append(("create", hostname))
        if self.fail_create is not None:
            if self.write_before_failing:
                self.records[hostname] = tunnel_id
            raise self.fail_create
        if hostname in self.records:
            return False
        self.records[hostname] = tunnel_id
        return True

    def remove_route(self, tunnel_id, hostname):
        self.calls.append(("remove", hostname))
        if self.fail_remove is not None:
            raise self.fail_remove
        return self.records.pop(hostname, None) is not None


class FakeService:
    """Service controller counting restarts."""

    def __init__(self):
        self.restarts = 0
        self.fail_restart: Exception | None = None
        self.state = ServiceState.RUNNING
        self.log_lines: list[str] = []

    def restart(self):
        if self.fail_restart is not None:
            raise self.fail_restart
        self.restarts += 1

    def status(self):
        return self.state

    def logs(self, lines=50, follow=False, grep=None):
        selected = [line for line in self.log_lines if grep is None or grep in line]
        return iter(selected[-lines:] if lines else [])


class FakeAccess:
    """Access policy manager keeping applications as owner/group pairs."""

    def __init__(self, groups=("friends",)):
        self.groups = set(groups)
        self.apps: dict[str, dict] = {}
        self.fail_grant: Exception | None = None
        self.fail_remove: Exception | None = None
        self.fail_restore: Exception | None = None

    def snapshot(self, hostname):
        app = self.apps.get(hostname)
        if app is None:
            return None
        level = (
            AccessLevel.for_group(app["group"]) if app["group"] else AccessLevel.private()
        )
        return AccessGrant(hostname=hostname, level=level, owner=app["owner"])

    def describe(self, hostname):
        grant = self.snapshot(hostname)
        return grant.level if grant else AccessLevel.public()

    def grant(self, hostname, level, identity):
        if self.fail_grant is not None:
            raise self.fail_grant
        if level.is_public:
            return GrantReceipt(hostname=hostname)
        if level.kind == AccessLevelKind.GROUP and level.group not in self.groups:
            raise AccessGroupNotFoundError(f"Access group '{level.group}' not found")
        previous = self.snapshot(hostname)
        created = hostname not in self.apps
        self.apps[hostname] = {"owner": identity, "group": level.group}
        return GrantReceipt(hostname=hostname, created_application=created, previous=previous)

    def revoke_group(self, hostname):
        app = self.apps.get(hostname)
        if app is None:
            raise AccessPolicyNotFoundError(hostname)
        if app["group"] is None:
            return False
        app["group"] = None
        return True

    def remove(self, hostname):
        if self.fail_remove is not None:
            raise self.fail_remove
        previous = self.snapshot(hostname)
        self.apps.pop(hostname, None)
        return previous

    def restore(self, grant, identity=None):
        if self.fail_restore is not None:
            raise self.fail_restore
        if grant.level.is_public:
            self.apps.pop(grant.hostname, None)
            return
        self.grant(grant.hostname, grant.level, grant.owner or identity)


@pytest.fixture
def fake_dns():
    return FakeDNS()


@pytest.fixture
def fake_service():
    return FakeService()


@pytest.fixture
def fake_access():
    return FakeAccess()


@pytest.fixture
def host_lock(tmp_path):
    return HostLock(tmp_path / "orb.lock", timeout=5.0)


@pytest.fixture
def probe_responses():
    """Status code (or exception) returned per probed hostname."""
    return {}


@pytest.fixture
def coordinator(store, fake_dns, fake_service, fake_access, host_lock, probe_responses):
    """Coordinator wired to in-memory collaborators and a real route file."""

    def probe(request: httpx.Request) -> httpx.Response:
        outcome = probe_responses.get(request.url.host, 200)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    return MutationCoordinator(
        domain=DOMAIN,
        store=store,
        dns=fake_dns,
        service=fake_service,
        access=fake_access,
        lock=host_lock,
        identity=OWNER,
        scheduler=Mock(),
        probe_transport=httpx.MockTransport(probe),
        port_check=lambda port: True,
    )


# Cloudflare API


class FakeCloudflareAPI:
    """Just enough of the Cloudflare v4 API for DNS records and Access."""

    def __init__(self, zone_id="zone-1", account_id="acct-1"):
        self.zone_id = zone_id
        self.account_id = account_id
        self.records: dict[str, dict] = {}
        self.apps: dict[str, dict] = {}
        self.policies: dict[str, dict[str, dict]] = {}
        self.groups: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.failures: list[tuple[str, str, int, list[dict]]] = []
        self._ids = itertools.count(1)

    def fail(self, method, pattern, status=400, code=1000, message="boom"):
        """Make requests matching ``method`` and path regex fail."""
        self.failures.append((method, pattern, status, [{"code": code, "message": message}]))

    def add_group(self, name, emails):
        group_id = f"grp-{next(self._ids)}"
        self.groups[group_id] = {
            "id": group_id,
            "name": name,
            "include": [{"email": {"email": e}} for e in emails],
        }
        return group_id

    def writes(self):
        return [(m, p) for m, p in self.requests if m != "GET"]

    @staticmethod
    def _ok(result):
        return httpx.Response(
            200,
            json={
                "success": True,
                "errors": [],
                "messages": [],
                "result": result,
                "result_info": {"page": 1, "total_pages": 1},
            },
        )

    @staticmethod
    def _error(status, code, message):
        return httpx.Response(
            status,
            json={"success": False, "errors": [{"code": code, "message": message}], "result": None},
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/client/v4/")
        self.requests.append((method, path))

        for fail_method, pattern, status, errors in self.failures:
            if fail_method == method and re.fullmatch(pattern, path):
                return httpx.Response(
                    status, json={"success": False, "errors": errors, "result": None}
                )

        body = json.loads(request.content) if request.content else None
        parts = path.split("/")
        if parts[:3] == ["zones", self.zone_id, "dns_records"]:
            return self._dns(method, parts[3:], request, body)
        if parts[:3] == ["accounts", self.account_id, "access"]:
            if parts[3] == "apps":
                return self._apps(method, parts[4:], body)
            if parts[3] == "groups":
                return self._groups(method, parts[4:], body)
        return self._error(404, 7003, "Could not route to endpoint")

    def _dns(self, method, rest, request, body):
        if method == "GET" and not rest:
            name = request.url.params.get("name")
            kind = request.url.params.get("type")
            return self._ok(
                [
                    r
                    for r in self.records.values()
                    if (name is None or r["name"] == name) and (kind is None or r["type"] == kind)
                ]
            )
        if method == "POST" and not rest:
            if any(r["name"] == body["name"] for r in self.records.values()):
                return self._error(
                    400, 81053, "An A, AAAA, or CNAME record with that host already exists."
                )
            record_id = f"rec-{next(self._ids)}"
            self.records[record_id] = dict(body, id=record_id)
            return self._ok(self.records[record_id])
        if method == "DELETE" and len(rest) == 1:
            if self.records.pop(rest[0], None) is None:
                return self._error(404, 81044, "Record does not exist.")
            return self._ok({"id": rest[0]})
        return self._error(405, 10000, "Method not allowed")

    def _apps(self, method, rest, body):
        if not rest:
            if method == "GET":
                return self._ok(list(self.apps.values()))
            if method == "POST":
                app_id = f"app-{next(self._ids)}"
                self.apps[app_id] = dict(body, id=app_id)
                self.policies[app_id] = {}
                return self._ok(self.apps[app_id])
        app_id = rest[0]
        if app_id not in self.apps:
            return self._error(404, 12130, "access.api.error.not_found")
        if len(rest) == 1 and method == "DELETE":
            del self.apps[app_id]
            del self.policies[app_id]
            return self._ok({"id": app_id})
        if len(rest) >= 2 and rest[1] == "policies":
            policies = self.policies[app_id]
            if len(rest) == 2 and method == "GET":
                return self._ok(sorted(policies.values(), key=lambda p: p["precedence"]))
            if len(rest) == 2 and method == "POST":
                if any(p["precedence"] == body["precedence"] for p in policies.values()):
                    return self._error(400, 12130, "precedence must be unique")
                policy_id = f"pol-{next(self._ids)}"
                policies[policy_id] = dict(body, id=policy_id)
                return self._ok(policies[policy_id])
            if len(rest) == 3 and rest[2] in policies:
                if method == "PUT":
                    policies[rest[2]] = dict(body, id=rest[2])
                    return self._ok(policies[rest[2]])
                if method == "DELETE":
                    del policies[rest[2]]
                    return self._ok({"id": rest[2]})
        return self._error(404, 12130, "access.api.error.not_found")

    def _groups(self, method, rest, body):
        if not rest:
            if method == "GET":
                return self._ok(list(self.groups.values()))
            if method == "POST":
                group_id = f"grp-{next(self._ids)}"
                self.groups[group_id] = dict(body, id=group_id)
                return self._ok(self.groups[group_id])
        elif rest[0] in self.groups:
            if method == "PUT":
                self.groups[rest[0]] = dict(body, id=rest[0])
                return self._ok(self.groups[rest[0]])
            if method == "DELETE":
                del self.groups[rest[0]]
                return self._ok({"id": rest[0]})
        return self._error(404, 12130, "access.api.error.not_found")

    def app_for(self, hostname):
        for app in self.apps.values():
            if app["domain"] == hostname:
                return app
        return None


@pytest.fixture
def cloudflare_api():
    return FakeCloudflareAPI()


@pytest.fixture
def cloudflare_client(cloudflare_api):
    client = CloudflareClient("test-token-1234", transport=httpx.MockTransport(cloudflare_api.handle))
    yield client
    client.close()


@pytest.fixture
def service_error():
    return ServiceError("Failed to restart cloudflared (exit 1): boom")


@pytest.fixture
def api_error():
    return CloudflareAPIError("POST zones/zone-1/dns_records failed (500): boom", status_code=500)
