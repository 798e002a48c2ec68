"""Keeps Apache Guacamole connections in sync with KubeVirt VirtualMachines."""

__version__ = "0.1.0"
