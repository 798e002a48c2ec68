"""
Thin async facade over the Kubernetes API for the resources the watcher reads
and writes. The ``kubernetes`` client is blocking, so every call is pushed to a
worker thread with :func:`asyncio.to_thread` and carries an explicit
``_request_timeout``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import kubernetes
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from vm_watcher.errors import ClusterAPIError, ConfigurationError, ConflictError
from vm_watcher.models import (
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    KUBEVIRT_VMI_PLURAL,
    ResourceKey,
    VirtualMachine,
)

logger = logging.getLogger(__name__)

Mutation = Callable[[Dict[str, Any]], bool]


def load_kube_clients() -> tuple[CustomObjectsApi, CoreV1Api]:
    """Return (custom_objects, core_v1) after loading local or in-cluster config."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube-config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in-cluster kube-config")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise ConfigurationError("Cannot load Kubernetes config") from exc
    return CustomObjectsApi(), CoreV1Api()


class ClusterStore:
    """Reads VMs, VMIs and Services; writes VM metadata with optimistic concurrency."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        core_api: CoreV1Api,
        request_timeout: float = 10.0,
        conflict_retries: int = 5,
    ):
        self.custom_api = custom_api
        self.core_api = core_api
        self.request_timeout = request_timeout
        self.conflict_retries = conflict_retries

    async def get_virtual_machine(self, key: ResourceKey) -> Optional[VirtualMachine]:
        body = await self._get_custom(KUBEVIRT_VM_PLURAL, key)
        return VirtualMachine(body) if body is not None else None

    async def get_virtual_machine_instance(self, key: ResourceKey) -> Optional[Dict[str, Any]]:
        return await self._get_custom(KUBEVIRT_VMI_PLURAL, key)

    async def list_services(self, namespace: str) -> List[Dict[str, Any]]:
        try:
            services = await asyncio.to_thread(
                self.core_api.list_namespaced_service,
                namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            raise ClusterAPIError(f"Failed to list services in {namespace}", exc.status) from exc
        # Plain dicts keep the resolver independent of the client's model classes.
        return [self.core_api.api_client.sanitize_for_serialization(svc) for svc in services.items]

    async def update_virtual_machine(self, key: ResourceKey, mutate: Mutation) -> Optional[VirtualMachine]:
        """Apply *mutate* to the latest VM body and write it back.

        *mutate* edits the body in place and returns whether anything changed.
        The write is a ``replace`` guarded by the fetched ``resourceVersion``;
        on a 409 the VM is fetched again and *mutate* re-applied. Returns the
        stored VM, or ``None`` if it no longer exists.
        """
        for attempt in range(1, self.conflict_retries + 1):
            body = await self._get_custom(KUBEVIRT_VM_PLURAL, key)
            if body is None:
                logger.info("VM %s disappeared before it could be updated", key)
                return None
            if not mutate(body):
                return VirtualMachine(body)
            try:
                stored = await asyncio.to_thread(
                    self.custom_api.replace_namespaced_custom_object,
                    group=KUBEVIRT_GROUP,
                    version=KUBEVIRT_VERSION,
                    namespace=key.namespace,
                    plural=KUBEVIRT_VM_PLURAL,
                    name=key.name,
                    body=body,
                    _request_timeout=self.request_timeout,
                )
            except ApiException as exc:
                if exc.status == 409:
                    logger.debug("Conflict updating VM %s (attempt %d), refetching", key, attempt)
                    continue
                if exc.status == 404:
                    logger.info("VM %s disappeared before it could be updated", key)
                    return None
                raise ClusterAPIError(f"Failed to update VM {key}", exc.status) from exc
            return VirtualMachine(stored)
        raise ConflictError(f"Gave up updating VM {key} after {self.conflict_retries} conflicts")

    async def _get_custom(self, plural: str, key: ResourceKey) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(
                self.custom_api.get_namespaced_custom_object,
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=key.namespace,
                plural=plural,
                name=key.name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ClusterAPIError(f"Failed to get {plural} {key}", exc.status) from exc
