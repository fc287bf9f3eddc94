"""The plugin that configures SR-IOV devices on virtual platforms."""

from __future__ import annotations

import copy
import logging
from contextlib import nullcontext

from sriovconf.models import NodeState
from sriovconf.plugins.base import Plugin
from sriovconf.plugins.generic_plugin import VfioState, need_vfio_driver
from sriovconf.service import chroot
from sriovconf.sysfs import LOAD_KMOD_SCRIPT, Sysfs, load_kernel_module
from sriovconf.virtual_platform import sync_node_state_virtual

log = logging.getLogger(__name__)


class VirtualPlugin(Plugin):
    """Binds the VFs of a virtual node and loads vfio-pci when needed."""

    name = "virtual_plugin"
    spec_version = "1.0"

    def __init__(
        self,
        sysfs: Sysfs | None = None,
        chroot_path: str | None = "/host",
        kmod_script: str = LOAD_KMOD_SCRIPT,
    ) -> None:
        self.sysfs = sysfs if sysfs is not None else Sysfs()
        self.chroot_path = chroot_path
        self.kmod_script = kmod_script
        self.desire_state: NodeState | None = None
        self.last_state: NodeState | None = None
        self.load_vfio_driver = VfioState.UNLOADED

    def on_node_state_add(self, state: NodeState) -> tuple[bool, bool]:
        log.info("virtual-plugin on_node_state_add()")
        return self._handle(state)

    def on_node_state_change(self, old: NodeState | None, new: NodeState) -> tuple[bool, bool]:
        log.info("virtual-plugin on_node_state_change()")
        return self._handle(new)

    def _handle(self, state: NodeState) -> tuple[bool, bool]:
        self.desire_state = state
        if self.load_vfio_driver is not VfioState.LOADED and need_vfio_driver(state):
            self.load_vfio_driver = VfioState.LOADING
        return False, False

    def apply(self) -> None:
        if self.desire_state is None:
            raise RuntimeError("no desired node state to apply")
        log.info("virtual-plugin apply(): desired state %s", self.desire_state.spec)
        if self.load_vfio_driver is VfioState.LOADING:
            load_kernel_module("vfio_pci", self.kmod_script)
            self.load_vfio_driver = VfioState.LOADED

        if self.last_state is not None and self.last_state.spec.interfaces == self.desire_state.spec.interfaces:
            log.info("virtual-plugin apply(): nothing to apply")
            return

        with chroot(self.chroot_path) if self.chroot_path else nullcontext():
            sync_node_state_virtual(self.desire_state, self.sysfs)
        self.last_state = copy.deepcopy(self.desire_state)