import copy
import json
import logging
import os
import re
from collections import Counter
from unittest.mock import MagicMock
from urllib.parse import parse_qs

import httpx
import pytest
import yaml

from vm_watcher.engine import Reconciler
from vm_watcher.guacamole import GuacamoleClient
from vm_watcher.models import ResourceKey, VirtualMachine
from vm_watcher.resolver import EndpointResolver

# Configure logging for the test session
logging.basicConfig(level=logging.INFO)
log = logging.getLogger()

TEST_DIR = os.path.dirname(__file__)
TEST_VM_PATH = os.path.join(TEST_DIR, "test-vm.yaml")

GUACAMOLE_URL = "http://guacamole.test/guacamole"
GUACAMOLE_TOKEN = "C90FC60C1B27E1F8A8A0B6C0D9F4E1B2"
DATA_SOURCE = "postgresql"


# --------------------------------------------------------------------------- #
# In-memory stand-ins for the cluster and the Guacamole server
# --------------------------------------------------------------------------- #


class FakeCluster:
    """Keeps VM, VMI and Service bodies in memory, with the same async
    interface as :class:`vm_watcher.cluster.ClusterStore`.

    Deletion mimics the API server: a VM with finalizers only gets a
    ``deletionTimestamp``; it disappears once the last finalizer is removed.
    """

    def __init__(self):
        self.vms = {}
        self.vmis = {}
        self.services = {}
        self.writes = 0

    # --- test helpers ----------------------------------------------------

    def add_vm(self, body):
        body = copy.deepcopy(body)
        body["metadata"].setdefault("resourceVersion", "1")
        key = VirtualMachine(body).key
        self.vms[key] = body
        return key

    def body(self, key):
        return self.vms[key]

    def set_status(self, key, printable_status):
        self.vms[key].setdefault("status", {})["printableStatus"] = printable_status

    def request_deletion(self, key):
        meta = self.vms[key]["metadata"]
        if meta.get("finalizers"):
            meta["deletionTimestamp"] = "2025-01-01T00:00:00Z"
        else:
            del self.vms[key]

    def add_vmi(self, key, *ips):
        self.vmis[key] = {
            "metadata": {"name": key.name, "namespace": key.namespace},
            "status": {"phase": "Running", "interfaces": [{"name": "default", "ipAddress": ip} for ip in ips]},
        }

    def add_service(self, namespace, name, selector):
        self.services.setdefault(namespace, []).append(
            {"metadata": {"name": name, "namespace": namespace}, "spec": {"selector": selector}}
        )

    # --- ClusterStore interface -----------------------------------------

    async def get_virtual_machine(self, key):
        body = self.vms.get(key)
        return VirtualMachine(copy.deepcopy(body)) if body is not None else None

    async def get_virtual_machine_instance(self, key):
        return copy.deepcopy(self.vmis.get(key))

    async def list_services(self, namespace):
        return copy.deepcopy(self.services.get(namespace, []))

    async def update_virtual_machine(self, key, mutate):
        if key not in self.vms:
            return None
        body = copy.deepcopy(self.vms[key])
        if not mutate(body):
            return VirtualMachine(body)
        self.writes += 1
        meta = body["metadata"]
        meta["resourceVersion"] = str(int(meta.get("resourceVersion", "0")) + 1)
        if meta.get("deletionTimestamp") and not meta.get("finalizers"):
            del self.vms[key]
        else:
            self.vms[key] = body
        return VirtualMachine(copy.deepcopy(body))


class FakeGuacamoleServer:
    """Answers the Guacamole REST calls the client makes, through
    ``httpx.MockTransport``. ``fail`` maps an operation name to the HTTP status
    it should answer with."""

    PATH = re.compile(r"/guacamole/api/session/data/(?P<ds>[^/]+)/connections(?:/(?P<id>[^/]+))?")

    def __init__(self):
        self.connections = {}
        self.calls = Counter()
        self.requests = []
        self.fail = {}
        self._next_id = 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/guacamole/api/tokens" and request.method == "POST":
            self.calls["auth"] += 1
            if "auth" in self.fail:
                return httpx.Response(self.fail["auth"])
            form = parse_qs(request.content.decode())
            if form != {"username": ["guacadmin"], "password": ["secret"]}:
                return httpx.Response(403, json={"message": "Permission Denied."})
            return httpx.Response(
                200,
                json={
                    "authToken": GUACAMOLE_TOKEN,
                    "username": "guacadmin",
                    "dataSource": DATA_SOURCE,
                    "availableDataSources": [DATA_SOURCE, "postgresql-shared"],
                },
            )

        match = self.PATH.fullmatch(path)
        if match is None or request.url.params.get("token") != GUACAMOLE_TOKEN:
            return httpx.Response(403, json={"message": "Permission Denied."})
        identifier = match.group("id")

        if request.method == "POST" and identifier is None:
            self.calls["create"] += 1
            if "create" in self.fail:
                return httpx.Response(self.fail["create"])
            body = json.loads(request.content)
            identifier = str(self._next_id)
            self._next_id += 1
            self.connections[identifier] = body
            return httpx.Response(200, json={"identifier": identifier, **body})

        if request.method == "PUT" and identifier is not None:
            self.calls["update"] += 1
            if "update" in self.fail:
                return httpx.Response(self.fail["update"])
            if identifier not in self.connections:
                return httpx.Response(404, json={"message": "No such connection."})
            self.connections[identifier] = json.loads(request.content)
            return httpx.Response(204)

        if request.method == "DELETE" and identifier is not None:
            self.calls["delete"] += 1
            if "delete" in self.fail:
                return httpx.Response(self.fail["delete"])
            if self.connections.pop(identifier, None) is None:
                return httpx.Response(404, json={"message": "No such connection."})
            return httpx.Response(204)

        return httpx.Response(405)

    @property
    def gateway_calls(self):
        """Calls other than authentication."""
        return self.calls["create"] + self.calls["update"] + self.calls["delete"]


# --------------------------------------------------------------------------- #
# Fixtures
# --------------------------------------------------------------------------- #


@pytest.fixture
def vm_manifest():
    with open(TEST_VM_PATH) as f:
        return yaml.safe_load(f)


@pytest.fixture
def vm_body(vm_manifest):
    """The test VM as the API server would return it: with generation and status."""
    body = copy.deepcopy(vm_manifest)
    body["metadata"].update({"uid": "4d1f3c1e-0d0e-4a43-9a1a-2f1b0f7a3a10", "generation": 1})
    body["status"] = {"printableStatus": "Running"}
    return body


@pytest.fixture
def vm_key():
    return ResourceKey("default", "win-desktop")


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def guacamole_server():
    return FakeGuacamoleServer()


@pytest.fixture
async def guacamole(guacamole_server):
    http = httpx.AsyncClient(base_url=GUACAMOLE_URL, transport=httpx.MockTransport(guacamole_server.handler))
    client = GuacamoleClient(http, "guacadmin", "secret")
    yield client
    await client.aclose()


@pytest.fixture
def recorder():
    return MagicMock()


@pytest.fixture
def reconciler(cluster, guacamole, recorder):
    return Reconciler(
        cluster,
        EndpointResolver(cluster),
        guacamole,
        recorder,
        wait_for_running=30,
        retry_delay=120,
    )
