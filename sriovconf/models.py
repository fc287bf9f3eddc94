"""Desired and observed SR-IOV node state, and the switchdev configuration file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

ESWITCH_MODE_LEGACY = "legacy"
ESWITCH_MODE_SWITCHDEV = "switchdev"

SWITCHDEV_CONF_PATH = "/host/etc/switchdev.conf"


@dataclass
class VfGroup:
    """A range of virtual functions of one interface sharing a configuration."""

    resource_name: str = ""
    device_type: str = ""
    vf_range: str = ""
    policy_name: str = ""
    mtu: int = 0


@dataclass
class Interface:
    """Desired configuration of one physical function."""

    pci_address: str = ""
    num_vfs: int = 0
    mtu: int = 0
    name: str = ""
    link_type: str = ""
    eswitch_mode: str = ""
    vf_groups: list[VfGroup] = field(default_factory=list)


@dataclass
class VirtualFunction:
    """Observed state of one virtual function."""

    pci_address: str = ""
    name: str = ""
    mac: str = ""
    assigned: str = ""
    driver: str = ""
    vendor: str = ""
    device_id: str = ""
    vlan: int = 0
    mtu: int = 0
    vf_id: int = 0


@dataclass
class InterfaceExt:
    """Observed state of one physical function."""

    pci_address: str = ""
    name: str = ""
    mac: str = ""
    driver: str = ""
    vendor: str = ""
    device_id: str = ""
    net_filter: str = ""
    mtu: int = 0
    num_vfs: int = 0
    link_speed: str = ""
    link_type: str = ""
    eswitch_mode: str = ""
    total_vfs: int = 0
    vfs: list[VirtualFunction] = field(default_factory=list)


@dataclass
class NodeStateSpec:
    """The desired interfaces of a node."""

    interfaces: list[Interface] = field(default_factory=list)
    dp_config_version: str = ""


@dataclass
class NodeStateStatus:
    """The observed interfaces of a node."""

    interfaces: list[InterfaceExt] = field(default_factory=list)
    sync_status: str = ""
    last_sync_error: str = ""


@dataclass
class NodeState:
    """Desired and observed SR-IOV state of one node."""

    name: str = ""
    namespace: str = ""
    spec: NodeStateSpec = field(default_factory=NodeStateSpec)
    status: NodeStateStatus = field(default_factory=NodeStateStatus)

    def interface_state_by_pci_address(self, pci_address: str) -> InterfaceExt | None:
        """Return the observed interface at ``pci_address``, or None."""
        return next(
            (iface for iface in self.status.interfaces if iface.pci_address == pci_address),
            None,
        )


def index_in_range(index: int, vf_range: str) -> bool:
    """Tell whether ``index`` lies within an inclusive ``start-end`` range."""
    start, sep, end = vf_range.partition("-")
    if not sep:
        return False
    try:
        low, high = int(start), int(end)
    except ValueError:
        return False
    return low <= index <= high


def is_switchdev_mode_spec(spec: NodeStateSpec) -> bool:
    """Tell whether any desired interface is in switchdev mode."""
    return any(iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV for iface in spec.interfaces)


def write_switchdev_conf_file(state: NodeState, path: str = SWITCHDEV_CONF_PATH) -> tuple[bool, bool]:
    """Bring the switchdev configuration file in line with ``state``.

    Returns ``(update, remove)``: whether the file changed, and whether it
    was emptied. The file is created when missing.
    """
    try:
        os.stat(path)
    except FileNotFoundError:
        log.debug("switchdev configuration file %s does not exist, creating it", path)
        with open(path, "w", encoding="utf-8"):
            pass

    new_content = "".join(
        f"{iface.pci_address} {iface.num_vfs}\n"
        for iface in state.spec.interfaces
        if iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV
    )
    with open(path, encoding="utf-8") as handle:
        old_content = handle.read()
    if new_content == old_content:
        log.debug("switchdev configuration unchanged")
        return False, False

    remove = new_content == ""
    if remove:
        log.debug("removing content of %s", path)
    log.debug("writing %r to %s", new_content, path)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(new_content)
    return True, remove