"""
Derive the Guacamole connection definition for a VM.

Protocol, port and credentials come from the VM's override annotations; all
other parameters are fixed per protocol. Guacamole's connection schema wants
every recording and routing key present, so those are sent as empty strings.
"""
from __future__ import annotations

import logging
from typing import Dict

from vm_watcher.guacamole import GuacamoleConnection
from vm_watcher.models import VirtualMachine

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL = "rdp"

RDP_PORT = "3389"
VNC_PORT = "5900"
SSH_PORT = "22"

PROTOCOL_PARAMETERS: Dict[str, Dict[str, str]] = {
    "vnc": {
        "color-depth": "24",
        "cursor": "remote",
        "read-only": "false",
        "swap-red-blue": "false",
        "disable-copy": "false",
        "disable-paste": "false",
        "enable-audio": "false",
    },
    "rdp": {
        "security": "any",
        "ignore-cert": "true",
        "disable-auth": "false",
        "resize-method": "reconnect",
        "console-audio": "false",
        "disable-audio": "false",
        "enable-wallpaper": "false",
        "enable-theming": "false",
        "enable-font-smoothing": "false",
    },
    "ssh": {
        "font-size": "12",
        "color-scheme": "",
        "scrollback": "",
        "terminal-type": "",
    },
}

# Override annotations copied verbatim into the parameters, per protocol.
CREDENTIAL_KEYS: Dict[str, tuple] = {
    "vnc": ("password",),
    "rdp": ("username", "password", "domain"),
    "ssh": ("username", "password", "private-key"),
}

EXTRA_PARAMETERS = (
    "recording-path",
    "recording-name",
    "recording-exclude-output",
    "recording-exclude-mouse",
    "recording-include-keys",
    "create-recording-path",
    "dest-host",
    "dest-port",
)

ATTRIBUTES = (
    "max-connections",
    "max-connections-per-user",
    "weight",
    "failover-only",
    "guacd-port",
    "guacd-encryption",
    "guacd-hostname",
)


def select_protocol(vm: VirtualMachine) -> str:
    protocol = vm.override("protocol")
    return protocol.lower() if protocol is not None else DEFAULT_PROTOCOL


def select_port(protocol: str, port: str) -> str:
    """Swap a port that is still another protocol's default for *protocol*'s own."""
    if protocol == "vnc" and port == RDP_PORT:
        return VNC_PORT
    if protocol == "rdp" and port == VNC_PORT:
        return RDP_PORT
    if protocol == "ssh" and port in (RDP_PORT, VNC_PORT):
        return SSH_PORT
    return port


def connection_name(vm: VirtualMachine) -> str:
    return f"{vm.namespace}-{vm.name}"


def build_connection(vm: VirtualMachine, hostname: str) -> GuacamoleConnection:
    protocol = select_protocol(vm)
    port = vm.override("port")
    port = select_port(protocol, port if port is not None else RDP_PORT)

    parameters = {"hostname": hostname, "port": port}
    parameters.update(PROTOCOL_PARAMETERS.get(protocol, {}))
    for key in CREDENTIAL_KEYS.get(protocol, ()):
        value = vm.override(key)
        if value is not None:
            parameters[key] = value
    for key in EXTRA_PARAMETERS:
        parameters.setdefault(key, "")

    logger.info(
        "Built Guacamole connection config for %s: protocol=%s hostname=%s port=%s",
        vm.key, protocol, hostname, port,
    )
    return GuacamoleConnection(
        name=connection_name(vm),
        protocol=protocol,
        parameters=parameters,
        attributes={key: "" for key in ATTRIBUTES},
    )
