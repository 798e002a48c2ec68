"""Work out which address Guacamole should dial to reach a VM."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from vm_watcher.cluster import ClusterStore
from vm_watcher.errors import ClusterAPIError, ResolutionError
from vm_watcher.models import VirtualMachine

logger = logging.getLogger(__name__)


def selector_matches(selector: Optional[Dict[str, str]], labels: Dict[str, str]) -> bool:
    """True if every pair of a non-empty *selector* is present in *labels*."""
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


def first_interface_ip(vmi: Dict[str, Any]) -> Optional[str]:
    for iface in vmi.get("status", {}).get("interfaces") or []:
        ip = iface.get("ipAddress")
        if ip:
            return ip
    return None


class EndpointResolver:
    """
    Resolution order:

    1. first non-empty interface IP of the running VMI,
    2. DNS name of the first Service in the namespace whose selector matches
       the VM labels,
    3. the VM name itself.

    A missing VMI only moves on to the next step; failing API calls raise
    :class:`ResolutionError`.
    """

    def __init__(self, cluster: ClusterStore, cluster_domain: str = "cluster.local"):
        self.cluster = cluster
        self.cluster_domain = cluster_domain

    async def resolve(self, vm: VirtualMachine) -> str:
        try:
            vmi = await self.cluster.get_virtual_machine_instance(vm.key)
        except ClusterAPIError as exc:
            raise ResolutionError(f"Failed to get VMI for {vm.key}: {exc}") from exc

        if vmi is not None:
            ip = first_interface_ip(vmi)
            if ip:
                logger.debug("Resolved %s to VMI address %s", vm.key, ip)
                return ip

        try:
            services = await self.cluster.list_services(vm.namespace)
        except ClusterAPIError as exc:
            raise ResolutionError(f"Failed to list services for {vm.key}: {exc}") from exc

        for svc in services:
            selector = (svc.get("spec") or {}).get("selector")
            if selector_matches(selector, vm.labels):
                svc_name = svc["metadata"]["name"]
                hostname = f"{svc_name}.{vm.namespace}.svc.{self.cluster_domain}"
                logger.debug("Resolved %s to service %s", vm.key, hostname)
                return hostname

        logger.debug("No address found for %s, falling back to VM name", vm.key)
        return vm.name
