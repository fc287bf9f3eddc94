"""The interface every node configuration plugin offers."""

from __future__ import annotations

import logging

from sriovconf.models import NodeState

log = logging.getLogger(__name__)


class Plugin:
    """A node configuration plugin.

    Change handlers return ``(need_drain, need_reboot)`` and raise on failure.
    The base class asks for neither drain nor reboot and applies nothing.
    """

    name = "plugin"
    spec_version = "1.0"

    def on_node_state_add(self, state: NodeState) -> tuple[bool, bool]:
        """Handle a newly created node state."""
        return self.on_node_state_change(None, state)

    def on_node_state_change(self, old: NodeState | None, new: NodeState) -> tuple[bool, bool]:
        """Handle an updated node state."""
        return False, False

    def apply(self) -> None:
        """Apply the configuration gathered by the change handlers."""
        return None


class IntelPlugin(Plugin):
    """Plugin for Intel NICs, which need no vendor-specific steps."""

    name = "intel_plugin"
    spec_version = "1.0"

    def on_node_state_add(self, state: NodeState) -> tuple[bool, bool]:
        log.info("intel-plugin on_node_state_add()")
        return False, False

    def on_node_state_change(self, old: NodeState | None, new: NodeState) -> tuple[bool, bool]:
        log.info("intel-plugin on_node_state_change()")
        return False, False

    def apply(self) -> None:
        log.info("intel-plugin apply()")