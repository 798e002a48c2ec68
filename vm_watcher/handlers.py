"""
Kopf handlers wiring the watcher into the operator runtime.

Every VirtualMachine change goes through kopf's change handlers, so kopf
owns the per-object queue, the worker limit and the retries: a reconcile
that asks to run again is turned into ``kopf.TemporaryError(delay=...)``.
The engine still keeps its own finalizer and state annotations on the VM.
Run with ``kopf run -m vm_watcher.handlers`` or through ``vm-watcher``
(see :mod:`vm_watcher.main`).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
import kopf

from vm_watcher.cluster import ClusterStore, load_kube_clients
from vm_watcher.config import load_settings
from vm_watcher.engine import Reconciler, is_relevant
from vm_watcher.errors import ConfigurationError, VMWatcherError
from vm_watcher.guacamole import GuacamoleClient
from vm_watcher.models import (
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    ResourceKey,
    Result,
    VirtualMachine,
)
from vm_watcher.resolver import EndpointResolver

logger = logging.getLogger(__name__)

VM = (KUBEVIRT_GROUP, KUBEVIRT_VERSION, KUBEVIRT_VM_PLURAL)

# kopf's diff-base drops status and most of metadata; these are put back so
# update handlers can see power-state and spec generation changes.
TRACKED_FIELDS = (
    ("status", "printableStatus"),
    ("metadata", "generation"),
)


class TrackedFieldsDiffBaseStorage(kopf.AnnotationsDiffBaseStorage):
    """Last-handled-configuration that also remembers the tracked fields."""

    def build(self, *, body: kopf.Body, extra_fields: Optional[Any] = None) -> Any:
        return super().build(body=body, extra_fields=list(extra_fields or ()) + list(TRACKED_FIELDS))


class KopfEventRecorder:
    """Posts Kubernetes events on the VM through kopf's event queue."""

    def normal(self, vm: VirtualMachine, reason: str, message: str) -> None:
        kopf.info(vm.body, reason=reason, message=message)

    def warning(self, vm: VirtualMachine, reason: str, message: str) -> None:
        kopf.warn(vm.body, reason=reason, message=message[:200])


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Load configuration, tune kopf and build the reconciler stack."""
    try:
        config = load_settings()
        custom_api, core_api = load_kube_clients()
    except ConfigurationError as exc:
        logger.critical("%s", exc)
        raise kopf.PermanentError(str(exc)) from exc

    settings.watching.server_timeout = 210  # seconds
    # Handler logs would otherwise all become Kubernetes events.
    settings.posting.level = logging.WARNING
    settings.batching.worker_limit = config.workers
    settings.persistence.diffbase_storage = TrackedFieldsDiffBaseStorage()

    http = httpx.AsyncClient(
        base_url=config.guacamole_url,
        timeout=config.http_timeout,
        headers={"Accept": "application/json"},
    )
    guacamole = GuacamoleClient(http, config.guacamole_username, config.guacamole_password)
    cluster = ClusterStore(custom_api, core_api, request_timeout=config.kube_request_timeout)
    memo.guacamole = guacamole
    memo.reconciler = Reconciler(
        cluster,
        EndpointResolver(cluster, cluster_domain=config.cluster_domain),
        guacamole,
        KopfEventRecorder(),
        wait_for_running=config.wait_for_running,
        retry_delay=config.retry_delay,
    )
    memo.reconcile_deadline = config.reconcile_deadline
    memo.retry_delay = config.retry_delay
    logger.info("VM watcher configured: %r", config)


async def _reconcile(memo: kopf.Memo, key: ResourceKey, last_seen: Optional[VirtualMachine] = None) -> Result:
    """One reconcile bounded by the deadline; known failures become retries."""
    try:
        return await asyncio.wait_for(
            memo.reconciler.reconcile(key, last_seen=last_seen),
            timeout=memo.reconcile_deadline,
        )
    except asyncio.TimeoutError as exc:
        raise kopf.TemporaryError(
            f"Reconcile of VM {key} exceeded {memo.reconcile_deadline}s", delay=memo.retry_delay
        ) from exc
    except VMWatcherError as exc:
        raise kopf.TemporaryError(f"Reconcile of VM {key} failed: {exc}", delay=memo.retry_delay) from exc


def relevant_change(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]], **_: Any) -> bool:
    return is_relevant(old, new)


@kopf.on.resume(*VM)
@kopf.on.create(*VM)
@kopf.on.update(*VM, when=relevant_change)
@kopf.on.delete(*VM)
async def reconcile_vm(name: str, namespace: str, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Reconcile a VirtualMachine; a requested requeue is a delayed kopf retry."""
    key = ResourceKey(namespace, name)
    result = await _reconcile(memo, key)
    if result.requeue:
        raise kopf.TemporaryError(f"VM {key} not settled yet", delay=result.requeue_after)


@kopf.on.event(*VM)
async def vm_event(event: kopf.RawEvent, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Clean up after VMs that vanished without passing through the finalizer."""
    if event.get("type") != "DELETED":
        return
    vm = VirtualMachine(event["object"])
    await _reconcile(memo, vm.key, last_seen=vm)


@kopf.on.cleanup()
async def shutdown(memo: kopf.Memo, **_: Dict[str, object]) -> None:
    guacamole = getattr(memo, "guacamole", None)
    if guacamole is not None:
        await guacamole.aclose()
    logger.info("VM watcher stopped")
