"""
engine.py
---------
Reconciliation of KubeVirt ``VirtualMachine`` resources against Guacamole.

State lives on the VM itself (annotations plus a finalizer), so every call to
:meth:`Reconciler.reconcile` starts from a fresh read of the VM and decides
which transition applies:

    absent            -> clean up the last known connection, if any
    deleting          -> delete connection, drop finalizer
    no finalizer      -> add finalizer, requeue immediately
    not processed     -> wait for Running, then create connection
    status changed    -> Running again: update connection; always record status
    otherwise         -> nothing to do

Every transition is safe to repeat: a request delivered twice sees the state
written by the first one.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from vm_watcher.cluster import ClusterStore
from vm_watcher.errors import GatewayAPIError, GatewayError, ResolutionError
from vm_watcher.guacamole import GuacamoleClient
from vm_watcher.models import (
    CONNECTION_ID_ANNOTATION,
    DONE,
    FINALIZER,
    LAST_STATUS_ANNOTATION,
    PROCESSED_ANNOTATION,
    PowerState,
    ResourceKey,
    Result,
    VirtualMachine,
)
from vm_watcher.profile import build_connection
from vm_watcher.resolver import EndpointResolver

logger = logging.getLogger(__name__)

WAIT_FOR_RUNNING = 30.0
RETRY_DELAY = 120.0


class EventRecorder(Protocol):
    """Publishes events on the VM so users see what happened to it."""

    def normal(self, vm: VirtualMachine, reason: str, message: str) -> None: ...

    def warning(self, vm: VirtualMachine, reason: str, message: str) -> None: ...


# ---------------------------------------------------------------------------
# Eligibility filter ---------------------------------------------------------
# ---------------------------------------------------------------------------

def is_relevant(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> bool:
    """Decide whether a change from *old* to *new* is worth a reconcile.

    ``old is None`` is a creation, ``new is None`` a deletion; both always
    count. Otherwise only the processed annotation, the printable status and
    the generation matter.
    """
    if old is None or new is None:
        return True
    before, after = VirtualMachine(old), VirtualMachine(new)
    return (
        before.annotations.get(PROCESSED_ANNOTATION) != after.annotations.get(PROCESSED_ANNOTATION)
        or before.power_state != after.power_state
        or before.generation != after.generation
    )


# ---------------------------------------------------------------------------
# Metadata mutations (applied inside ClusterStore.update_virtual_machine) ----
# ---------------------------------------------------------------------------

def _add_finalizer(body: Dict[str, Any]) -> bool:
    finalizers = body["metadata"].setdefault("finalizers", [])
    if FINALIZER in finalizers:
        return False
    finalizers.append(FINALIZER)
    return True


def _release(body: Dict[str, Any]) -> bool:
    """Drop the finalizer and forget the connection id."""
    meta = body["metadata"]
    changed = False
    finalizers = meta.get("finalizers") or []
    if FINALIZER in finalizers:
        meta["finalizers"] = [f for f in finalizers if f != FINALIZER]
        changed = True
    annotations = meta.get("annotations") or {}
    if annotations.get(CONNECTION_ID_ANNOTATION):
        del annotations[CONNECTION_ID_ANNOTATION]
        changed = True
    return changed


def _set_annotations(values: Dict[str, str]):
    def mutate(body: Dict[str, Any]) -> bool:
        annotations = body["metadata"].setdefault("annotations", {})
        if all(annotations.get(k) == v for k, v in values.items()):
            return False
        annotations.update(values)
        return True

    return mutate


# ---------------------------------------------------------------------------
# Reconciler -----------------------------------------------------------------
# ---------------------------------------------------------------------------

class Reconciler:
    def __init__(
        self,
        cluster: ClusterStore,
        resolver: EndpointResolver,
        guacamole: GuacamoleClient,
        recorder: EventRecorder,
        *,
        wait_for_running: float = WAIT_FOR_RUNNING,
        retry_delay: float = RETRY_DELAY,
    ):
        self.cluster = cluster
        self.resolver = resolver
        self.guacamole = guacamole
        self.recorder = recorder
        self.wait_for_running = wait_for_running
        self.retry_delay = retry_delay

    async def reconcile(self, key: ResourceKey, last_seen: Optional[VirtualMachine] = None) -> Result:
        """Bring Guacamole in line with the VM *key*.

        *last_seen* is the last snapshot the caller observed; it is only used
        when the VM is already gone. Cluster failures propagate as
        :class:`~vm_watcher.errors.ClusterAPIError`.
        """
        vm = await self.cluster.get_virtual_machine(key)
        if vm is None:
            logger.info("VM %s deleted", key)
            await self._handle_absent(key, last_seen)
            return DONE

        if vm.deleting:
            return await self._handle_deletion(vm)

        if not vm.has_finalizer:
            await self.cluster.update_virtual_machine(key, _add_finalizer)
            logger.info("Added finalizer to VM %s", key)
            return Result(requeue_after=0)

        if not vm.processed:
            return await self._handle_new(vm)

        if vm.last_status and vm.power_state and vm.last_status != vm.power_state:
            return await self._handle_status_change(vm)

        return DONE

    # --- transitions -----------------------------------------------------

    async def _handle_absent(self, key: ResourceKey, last_seen: Optional[VirtualMachine]) -> None:
        connection_id = last_seen.connection_id if last_seen is not None else ""
        try:
            await self._delete_connection(key, connection_id)
        except GatewayError as exc:
            logger.error("Failed to delete Guacamole connection %s of vanished VM %s: %s", connection_id, key, exc)

    async def _handle_deletion(self, vm: VirtualMachine) -> Result:
        connection_id = vm.connection_id
        try:
            await self._delete_connection(vm.key, connection_id)
        except GatewayError as exc:
            # Finalizer removal proceeds even when the delete failed.
            logger.error("Failed to delete Guacamole connection %s for VM %s: %s", connection_id, vm.key, exc)
            self.recorder.warning(vm, "ConnectionDeleteFailed", str(exc))
        else:
            if connection_id:
                self.recorder.normal(vm, "ConnectionDeleted", f"Deleted Guacamole connection {connection_id}")

        await self.cluster.update_virtual_machine(vm.key, _release)
        logger.info("Successfully handled VM deletion for %s", vm.key)
        return DONE

    async def _handle_new(self, vm: VirtualMachine) -> Result:
        if not vm.running:
            logger.info("VM %s not yet running (status: %s), waiting", vm.key, vm.power_state or "<none>")
            return Result(requeue_after=self.wait_for_running)

        logger.info("New running VM %s detected, creating Guacamole connection", vm.key)
        try:
            hostname = await self.resolver.resolve(vm)
            connection = build_connection(vm, hostname)
            session = await self.guacamole.authenticate()
            connection_id = await self.guacamole.create_connection(session, connection)
        except (GatewayError, ResolutionError) as exc:
            logger.error("Failed to create Guacamole connection for VM %s: %s", vm.key, exc)
            self.recorder.warning(vm, "ConnectionCreateFailed", str(exc))
            return Result(requeue_after=self.retry_delay)

        await self.cluster.update_virtual_machine(
            vm.key,
            _set_annotations({
                PROCESSED_ANNOTATION: "true",
                LAST_STATUS_ANNOTATION: vm.power_state,
                CONNECTION_ID_ANNOTATION: connection_id,
            }),
        )
        logger.info("Successfully created Guacamole connection %s for VM %s", connection_id, vm.key)
        self.recorder.normal(vm, "ConnectionCreated", f"Created Guacamole connection {connection_id}")
        return DONE

    async def _handle_status_change(self, vm: VirtualMachine) -> Result:
        logger.info("VM %s status changed: %s -> %s", vm.key, vm.last_status, vm.power_state)
        connection_id = vm.connection_id

        if vm.power_state == PowerState.STOPPED.value and connection_id:
            # Stopping leaves the connection in place; only the status is recorded.
            logger.info("VM %s stopped, keeping Guacamole connection %s", vm.key, connection_id)
        elif vm.running and connection_id:
            try:
                await self._update_connection(vm, connection_id)
            except (GatewayError, ResolutionError) as exc:
                logger.error("Failed to update Guacamole connection %s for VM %s: %s", connection_id, vm.key, exc)
                self.recorder.warning(vm, "ConnectionUpdateFailed", str(exc))
            else:
                self.recorder.normal(vm, "ConnectionUpdated", f"Updated Guacamole connection {connection_id}")

        await self.cluster.update_virtual_machine(
            vm.key, _set_annotations({LAST_STATUS_ANNOTATION: vm.power_state})
        )
        return DONE

    # --- gateway helpers -------------------------------------------------

    async def _update_connection(self, vm: VirtualMachine, connection_id: str) -> None:
        hostname = await self.resolver.resolve(vm)
        connection = build_connection(vm, hostname)
        session = await self.guacamole.authenticate()
        await self.guacamole.update_connection(session, connection_id, connection)

    async def _delete_connection(self, key: ResourceKey, connection_id: str) -> None:
        if not connection_id:
            logger.info("No Guacamole connection ID found for VM %s, skipping deletion", key)
            return
        session = await self.guacamole.authenticate()
        try:
            await self.guacamole.delete_connection(session, connection_id)
        except GatewayAPIError as exc:
            if exc.status != 404:
                raise
            logger.info("Guacamole connection %s for VM %s already gone", connection_id, key)
