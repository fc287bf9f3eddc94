"""The plugin that sets the firmware options of Mellanox NICs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from sriovconf.models import Interface, InterfaceExt, NodeState
from sriovconf.plugins.base import Plugin
from sriovconf.sysfs import is_kernel_lockdown_mode, run_command
from sriovconf.validate import SupportedNics

log = logging.getLogger(__name__)

ETH_LINK_TYPE = "ETH"
INFINIBAND_LINK_TYPE = "IB"
PRECONFIGURED_LINK_TYPE = "Preconfigured"
UNKNOWN_LINK_TYPE = "Uknown"
TOTAL_VFS = "NUM_OF_VFS"
ENABLE_SRIOV = "SRIOV_EN"
LINK_TYPE_P1 = "LINK_TYPE_P1"
LINK_TYPE_P2 = "LINK_TYPE_P2"
MELLANOX_VENDOR_ID = "15b3"
MSTCONFIG = "mstconfig"

FW_ATTRIBUTES = (TOTAL_VFS, ENABLE_SRIOV, LINK_TYPE_P1, LINK_TYPE_P2)

_FORMAT = re.compile(r"(?P<Attribute>\w+)\s+(?P<Default>\S+)\s+(?P<Current>\S+)\s+(?P<Next>\S+)")
_INTEGER = re.compile(r"[+-]?[0-9]+")
_BASE_ARG_COUNT = 4


@dataclass
class MlnxNic:
    """Firmware options of a Mellanox NIC; a total of -1 means leave it alone."""

    enable_sriov: bool = False
    total_vfs: int = 0
    link_type_p1: str = ""
    link_type_p2: str = ""


def parse_mstconfig_output(
    output: str, attributes: Iterable[str]
) -> tuple[dict[str, str], dict[str, str]]:
    """Return the current and next-boot values of ``attributes`` in a query output.

    Attributes that do not appear are left out; a line naming one that does not
    have the query's column layout raises ValueError.
    """
    current: dict[str, str] = {}
    following: dict[str, str] = {}
    lines = output.split("\n")
    for attribute in attributes:
        line = next((line for line in lines if attribute in line), None)
        if line is None:
            continue
        match = _FORMAT.search(line)
        if match is None:
            raise ValueError(f"cannot parse mstconfig line {line!r}")
        current[attribute] = match.group("Current")
        following[attribute] = match.group("Next")
    return current, following


def get_link_type(link_type: str) -> str:
    """Map a firmware link type value to ETH, IB, Uknown or Preconfigured."""
    if ETH_LINK_TYPE in link_type:
        return ETH_LINK_TYPE
    if INFINIBAND_LINK_TYPE in link_type:
        return INFINIBAND_LINK_TYPE
    if link_type:
        log.warning("link type %s is not one of [ETH, IB]", link_type)
        return UNKNOWN_LINK_TYPE
    log.warning("LINK_TYPE_P* attribute was not found")
    return PRECONFIGURED_LINK_TYPE


def mlnx_nic_from_map(data: dict[str, str]) -> MlnxNic:
    """Build firmware options from parsed values; raise ValueError on a bad VF count."""
    total = data.get(TOTAL_VFS, "")
    if not _INTEGER.fullmatch(total):
        raise ValueError(f"invalid {TOTAL_VFS} value: {total!r}")
    nic = MlnxNic(
        enable_sriov="True" in data.get(ENABLE_SRIOV, ""),
        total_vfs=int(total),
        link_type_p1=get_link_type(data.get(LINK_TYPE_P1, "")),
    )
    if LINK_TYPE_P2 in data:
        nic.link_type_p2 = get_link_type(data[LINK_TYPE_P2])
    return nic


def get_pci_address_prefix(pci_address: str) -> str:
    """Return the address without its last character, shared by the ports of a NIC."""
    return pci_address[:-1]


def is_link_type_require_change(
    iface: Interface, iface_status: InterfaceExt, fw_link_type: str
) -> bool:
    """Tell whether the port's link type must change; raise ValueError if it cannot."""
    if not iface.link_type or iface_status.link_type.lower() == iface.link_type.lower():
        return False
    if iface.link_type.lower() not in (ETH_LINK_TYPE.lower(), INFINIBAND_LINK_TYPE.lower()):
        raise ValueError(
            f"Not supported link type: {iface.link_type}, "
            "supported link types: [eth, ETH, ib, and IB]"
        )
    if fw_link_type == UNKNOWN_LINK_TYPE:
        raise ValueError(f"Unknown link type: {fw_link_type}")
    if fw_link_type == PRECONFIGURED_LINK_TYPE:
        raise ValueError(f"Network card {iface.pci_address} does not support link type change")
    return True


def handle_total_vfs(
    fw_current: MlnxNic,
    fw_next: MlnxNic,
    attrs: MlnxNic,
    iface_spec: Interface,
    other_port_spec: Interface | None = None,
) -> tuple[int, bool, bool]:
    """Work out the NIC's VF total, the larger of both ports' requests.

    Returns ``(total_vfs, need_reboot, change_without_reboot)`` and records the
    change in ``attrs``.
    """
    total_vfs = iface_spec.num_vfs
    if other_port_spec is not None and other_port_spec.num_vfs > total_vfs:
        total_vfs = other_port_spec.num_vfs

    need_reboot = False
    change_without_reboot = False
    if fw_current.total_vfs != total_vfs:
        log.debug("changing TotalVfs %d to %d, needs reboot", fw_current.total_vfs, total_vfs)
        attrs.total_vfs = total_vfs
        need_reboot = True
    if not need_reboot and fw_next.total_vfs != total_vfs:
        log.debug("changing next TotalVfs %d to %d without reboot", fw_next.total_vfs, total_vfs)
        attrs.total_vfs = total_vfs
        change_without_reboot = True
    return total_vfs, need_reboot, change_without_reboot


def handle_enable_sriov(
    total_vfs: int, fw_current: MlnxNic, fw_next: MlnxNic, attrs: MlnxNic
) -> tuple[bool, bool]:
    """Enable or disable SR-IOV as the VF total asks.

    Returns ``(need_reboot, change_without_reboot)`` and records the change in ``attrs``.
    """
    if total_vfs == 0 and fw_current.enable_sriov:
        log.debug("disabling Sriov, needs reboot")
        attrs.enable_sriov = False
        return True, False
    if total_vfs > 0 and not fw_current.enable_sriov:
        log.debug("enabling Sriov, needs reboot")
        attrs.enable_sriov = True
        return True, False
    if total_vfs > 0 and not fw_next.enable_sriov:
        attrs.enable_sriov = True
        return False, True
    return False, False


def build_mstconfig_args(pci_address: str, nic: MlnxNic) -> list[str]:
    """Return the mstconfig arguments that set ``nic``'s options on a device.

    When nothing is to be set only the four leading arguments are returned.
    """
    args = ["-d", pci_address, "-y", "set"]
    if nic.enable_sriov:
        args.append(f"{ENABLE_SRIOV}=True")
    elif nic.total_vfs == 0:
        args.append(f"{ENABLE_SRIOV}=False")
    if nic.total_vfs > -1:
        args.append(f"{TOTAL_VFS}={nic.total_vfs}")
    if nic.link_type_p1:
        args.append(f"{LINK_TYPE_P1}={nic.link_type_p1}")
    if nic.link_type_p2:
        args.append(f"{LINK_TYPE_P2}={nic.link_type_p2}")
    return args


class MellanoxPlugin(Plugin):
    """Sets VF count, SR-IOV and link types in Mellanox NIC firmware."""

    name = "mellanox_plugin"
    spec_version = "1.0"

    def __init__(
        self,
        runner: Callable[..., str] = run_command,
        lockdown: Callable[[], bool] | None = None,
        nics: SupportedNics | None = None,
    ) -> None:
        self._run = runner
        self._lockdown = lockdown if lockdown is not None else (lambda: is_kernel_lockdown_mode(False))
        self.nics = nics
        self.attributes_to_change: dict[str, MlnxNic] = {}
        self.nics_status: dict[str, dict[str, InterfaceExt]] = {}
        self.nics_spec: dict[str, Interface] = {}

    def on_node_state_add(self, state: NodeState) -> tuple[bool, bool]:
        log.info("mellanox-plugin on_node_state_add()")
        return self.on_node_state_change(None, state)

    def on_node_state_change(self, old: NodeState | None, new: NodeState) -> tuple[bool, bool]:
        log.info("mellanox-plugin on_node_state_change()")
        self.attributes_to_change = {}
        self.nics_spec = {}
        processed: set[str] = set()

        # The NIC status is read once; the firmware holds the rest.
        if not self.nics_status:
            for iface in new.status.interfaces:
                if iface.vendor != MELLANOX_VENDOR_ID:
                    continue
                prefix = get_pci_address_prefix(iface.pci_address)
                self.nics_status.setdefault(prefix, {})[iface.pci_address] = iface

        for iface in new.spec.interfaces:
            if get_pci_address_prefix(iface.pci_address) in self.nics_status:
                self.nics_spec[iface.pci_address] = iface

        if self._lockdown():
            if self.nics_spec:
                log.info("lockdown mode detected, failing on interface update for mellanox devices")
                raise RuntimeError("Mellanox device detected when in lockdown mode")
            log.info("lockdown mode detected, skipping mellanox nic processing")
            return False, False

        need_reboot = False
        for spec in list(self.nics_spec.values()):
            prefix = get_pci_address_prefix(spec.pci_address)
            if prefix in processed:
                continue
            processed.add(prefix)
            fw_current, fw_next = self._fw_data(spec.pci_address)

            attrs = MlnxNic(total_vfs=-1)
            other = self._other_port_spec(spec.pci_address) if self._is_dual_port(spec.pci_address) else None
            total_vfs, nic_reboot, change_without_reboot = handle_total_vfs(
                fw_current, fw_next, attrs, spec, other
            )
            sriov_reboot, sriov_change = handle_enable_sriov(total_vfs, fw_current, fw_next, attrs)
            link_reboot = self._handle_link_type(prefix, fw_current, attrs)

            nic_reboot = nic_reboot or sriov_reboot or link_reboot
            change_without_reboot = change_without_reboot or sriov_change
            if nic_reboot or change_without_reboot:
                self.attributes_to_change[spec.pci_address] = attrs
            need_reboot = need_reboot or nic_reboot

        # NICs that no policy asks for get their VFs removed.
        for prefix, ports in self.nics_status.items():
            if prefix in processed:
                continue
            processed.add(prefix)
            address = prefix + "0"
            port = ports.get(address)
            if not self._is_supported(port.device_id if port is not None else ""):
                continue
            _, fw_next = self._fw_data(address)
            if fw_next.total_vfs > 0 or fw_next.enable_sriov:
                self.attributes_to_change[address] = MlnxNic(total_vfs=0)
                log.debug("changing TotalVfs %d to 0, doesn't require rebooting", fw_next.total_vfs)

        need_drain = need_reboot
        log.debug("mellanox-plugin need_drain %s need_reboot %s", need_drain, need_reboot)
        return need_drain, need_reboot

    def apply(self) -> None:
        if self._lockdown():
            log.info("mellanox-plugin apply() - skipping due to lockdown mode")
            return
        log.info("mellanox-plugin apply()")
        self.config_fw()

    def config_fw(self) -> None:
        """Write the pending firmware options with mstconfig."""
        for pci_address, nic in self.attributes_to_change.items():
            args = build_mstconfig_args(pci_address, nic)
            log.debug("configuring firmware: %s", args)
            if len(args) <= _BASE_ARG_COUNT:
                continue
            self._run(MSTCONFIG, *args)

    def _fw_data(self, pci_address: str) -> tuple[MlnxNic, MlnxNic]:
        output = self._run(MSTCONFIG, "-e", "-d", pci_address, "q")
        current, following = parse_mstconfig_output(output, FW_ATTRIBUTES)
        return mlnx_nic_from_map(current), mlnx_nic_from_map(following)

    def _is_supported(self, device_id: str) -> bool:
        if not device_id:
            return False
        if self.nics is None:
            return True
        return any(device == device_id for _, device, _ in self.nics.models)

    def _is_dual_port(self, pci_address: str) -> bool:
        return len(self.nics_status.get(get_pci_address_prefix(pci_address), {})) > 1

    def _other_port_spec(self, pci_address: str) -> Interface | None:
        prefix = get_pci_address_prefix(pci_address)
        other = "1" if pci_address[len(prefix):] == "0" else "0"
        return self.nics_spec.get(prefix + other)

    def _iface_status(self, pci_address: str) -> InterfaceExt:
        status = self.nics_status.get(get_pci_address_prefix(pci_address), {}).get(pci_address)
        return status if status is not None else InterfaceExt(pci_address=pci_address)

    def _handle_link_type(self, prefix: str, fw_data: MlnxNic, attrs: MlnxNic) -> bool:
        need_reboot = False
        ports: Sequence[tuple[str, str, str]] = (
            ("0", fw_data.link_type_p1, "link_type_p1"),
            ("1", fw_data.link_type_p2, "link_type_p2"),
        )
        for suffix, fw_link_type, attribute in ports:
            address = prefix + suffix
            spec = self.nics_spec.get(address)
            if spec is None:
                continue
            if is_link_type_require_change(spec, self._iface_status(address), fw_link_type):
                log.debug("changing %s %s to %s, needs reboot", attribute, fw_link_type, spec.link_type)
                setattr(attrs, attribute, spec.link_type)
                need_reboot = True
        return need_reboot