"""
KubeVirt resource views and the annotation keys that carry reconciliation
state on each VirtualMachine.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_VM_PLURAL = "virtualmachines"
KUBEVIRT_VMI_PLURAL = "virtualmachineinstances"

ANNOTATION_PREFIX = "vm-watcher.setofangdar.polito.it"
FINALIZER = f"{ANNOTATION_PREFIX}/finalizer"

# Written by the engine.
PROCESSED_ANNOTATION = f"{ANNOTATION_PREFIX}/processed"
LAST_STATUS_ANNOTATION = f"{ANNOTATION_PREFIX}/last-status"
CONNECTION_ID_ANNOTATION = f"{ANNOTATION_PREFIX}/guacamole-connection-id"

# Written by users to override connection settings.
OVERRIDE_KEYS = ("protocol", "port", "username", "password", "domain", "private-key")


class PowerState(str, Enum):
    """``status.printableStatus`` values emitted by KubeVirt."""

    STOPPED = "Stopped"
    PROVISIONING = "Provisioning"
    STARTING = "Starting"
    RUNNING = "Running"
    PAUSED = "Paused"
    STOPPING = "Stopping"
    TERMINATING = "Terminating"
    CRASH_LOOP_BACKOFF = "CrashLoopBackOff"
    MIGRATING = "Migrating"
    UNKNOWN = "Unknown"
    ERROR_UNSCHEDULABLE = "ErrorUnschedulable"
    ERR_IMAGE_PULL = "ErrImagePull"
    IMAGE_PULL_BACKOFF = "ImagePullBackOff"
    ERROR_PVC_NOT_FOUND = "ErrorPvcNotFound"
    DATA_VOLUME_ERROR = "DataVolumeError"
    WAITING_FOR_VOLUME_BINDING = "WaitingForVolumeBinding"


class ResourceKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class VirtualMachine:
    """Read-only view over a ``VirtualMachine`` body as returned by the API."""

    def __init__(self, body: Dict[str, Any]):
        self.body = body
        self._meta = body.get("metadata") or {}
        self._status = body.get("status") or {}

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.namespace, self.name)

    @property
    def name(self) -> str:
        return self._meta.get("name", "")

    @property
    def namespace(self) -> str:
        return self._meta.get("namespace", "")

    @property
    def labels(self) -> Dict[str, str]:
        return self._meta.get("labels") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return self._meta.get("annotations") or {}

    @property
    def finalizers(self) -> List[str]:
        return self._meta.get("finalizers") or []

    @property
    def generation(self) -> Optional[int]:
        return self._meta.get("generation")

    @property
    def resource_version(self) -> Optional[str]:
        return self._meta.get("resourceVersion")

    @property
    def deleting(self) -> bool:
        return self._meta.get("deletionTimestamp") is not None

    @property
    def power_state(self) -> str:
        return self._status.get("printableStatus") or ""

    @property
    def running(self) -> bool:
        return self.power_state == PowerState.RUNNING.value

    # --- reconciliation state -------------------------------------------

    @property
    def processed(self) -> bool:
        return self.annotations.get(PROCESSED_ANNOTATION) == "true"

    @property
    def last_status(self) -> str:
        return self.annotations.get(LAST_STATUS_ANNOTATION, "")

    @property
    def connection_id(self) -> str:
        return self.annotations.get(CONNECTION_ID_ANNOTATION, "")

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.finalizers

    def override(self, key: str) -> Optional[str]:
        """Return the user override annotation *key* (e.g. ``"port"``), if set."""
        return self.annotations.get(f"{ANNOTATION_PREFIX}/{key}")

    def __repr__(self) -> str:
        return f"VirtualMachine({self.key}, status={self.power_state!r})"


@dataclass(frozen=True)
class Result:
    """Outcome of one reconciliation: done, or try again after a delay (seconds)."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


DONE = Result()
