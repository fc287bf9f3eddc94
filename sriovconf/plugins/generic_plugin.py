"""The plugin that configures SR-IOV devices of any vendor."""

from __future__ import annotations

import copy
import enum
import logging
import subprocess
from contextlib import nullcontext

from sriovconf.models import ESWITCH_MODE_SWITCHDEV, Interface, InterfaceExt, NodeState
from sriovconf.plugins.base import Plugin
from sriovconf.service import chroot
from sriovconf.sriov import sync_node_state
from sriovconf.sysfs import LOAD_KMOD_SCRIPT, Sysfs, load_kernel_module

log = logging.getLogger(__name__)

ENABLE_KARGS_SCRIPT = "bindata/scripts/enable-kargs.sh"
IOMMU_KERNEL_ARGS = ("intel_iommu=on", "iommu=pt")
_COMMAND_NOT_FOUND = 127


class VfioState(enum.Enum):
    """Whether the vfio-pci kernel module is loaded."""

    UNLOADED = 0
    LOADING = 1
    LOADED = 2


def need_vfio_driver(state: NodeState) -> bool:
    """Tell whether any desired VF group uses the vfio-pci driver."""
    return any(
        group.device_type == "vfio-pci"
        for iface in state.spec.interfaces
        for group in iface.vf_groups
    )


def need_drain_node(desired: list[Interface], current: list[InterfaceExt]) -> bool:
    """Tell whether applying ``desired`` requires draining the node."""
    for status in current:
        configured = False
        for iface in desired:
            if iface.pci_address != status.pci_address:
                continue
            configured = True
            if iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV:
                break
            if status.num_vfs != 0:
                if iface.num_vfs != status.num_vfs:
                    log.debug("need drain, expect NumVfs %d, current %d", iface.num_vfs, status.num_vfs)
                    return True
                if iface.mtu != 0 and iface.mtu != status.mtu:
                    log.debug("need drain, expect MTU %d, current %d", iface.mtu, status.mtu)
                    return True
        if not configured and status.num_vfs > 0:
            log.debug("need drain, %s needs to be reset", status.pci_address)
            return True
    return False


def try_enable_iommu_in_kernel_args(script_path: str = ENABLE_KARGS_SCRIPT) -> bool:
    """Add the IOMMU kernel arguments; return True when a reboot is needed.

    A missing boot loader tool is taken to mean the arguments are already set.
    """
    log.info("enabling iommu in kernel args")
    result = subprocess.run(
        ["/bin/sh", script_path, *IOMMU_KERNEL_ARGS],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode == _COMMAND_NOT_FOUND:
        log.error(
            "grubby command not found. Please ensure that kernel args %s are set",
            " ".join(IOMMU_KERNEL_ARGS),
        )
        return False
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, result.args, output=result.stdout, stderr=result.stderr
        )
    if int(result.stdout.strip()) > 0:
        log.info("need to reboot node")
        return True
    return False


class GenericPlugin(Plugin):
    """Configures SR-IOV devices through sysfs and loads vfio-pci when needed."""

    name = "generic_plugin"
    spec_version = "1.0"

    def __init__(
        self,
        sysfs: Sysfs | None = None,
        chroot_path: str | None = "/host",
        iommu_script: str = ENABLE_KARGS_SCRIPT,
        kmod_script: str = LOAD_KMOD_SCRIPT,
        initial_state: NodeState | None = None,
    ) -> None:
        self.sysfs = sysfs if sysfs is not None else Sysfs()
        self.chroot_path = chroot_path
        self.iommu_script = iommu_script
        self.kmod_script = kmod_script
        self.initial_state = initial_state
        self.desire_state: NodeState | None = None
        self.last_state: NodeState | None = None
        self.load_vfio_driver = VfioState.UNLOADED

    def on_node_state_add(self, state: NodeState) -> tuple[bool, bool]:
        log.info("generic-plugin on_node_state_add()")
        return self._handle(state)

    def on_node_state_change(self, old: NodeState | None, new: NodeState) -> tuple[bool, bool]:
        log.info("generic-plugin on_node_state_change()")
        return self._handle(new)

    def _handle(self, state: NodeState) -> tuple[bool, bool]:
        self.desire_state = state
        need_drain = need_drain_node(state.spec.interfaces, state.status.interfaces)
        need_reboot = False
        if self.load_vfio_driver is not VfioState.LOADED:
            if need_vfio_driver(state):
                self.load_vfio_driver = VfioState.LOADING
                need_reboot = try_enable_iommu_in_kernel_args(self.iommu_script)
            if need_reboot:
                need_drain = True
        return need_drain, need_reboot

    def apply(self) -> None:
        if self.desire_state is None:
            raise RuntimeError("no desired node state to apply")
        log.info("generic-plugin apply(): desired state %s", self.desire_state.spec)
        if self.load_vfio_driver is VfioState.LOADING:
            load_kernel_module("vfio_pci", self.kmod_script)
            self.load_vfio_driver = VfioState.LOADED

        if self.last_state is not None and self.last_state.spec.interfaces == self.desire_state.spec.interfaces:
            log.info("generic-plugin apply(): nothing to apply")
            return

        with chroot(self.chroot_path) if self.chroot_path else nullcontext():
            sync_node_state(self.desire_state, self.sysfs, self.initial_state)
        self.last_state = copy.deepcopy(self.desire_state)