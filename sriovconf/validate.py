"""Admission validation of SR-IOV node policies and operator configurations."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from sriovconf.models import InterfaceExt, NodeState

log = logging.getLogger(__name__)

INTEL_ID = "8086"
MELLANOX_ID = "15b3"
MLX_MAX_VFS = 128
DEFAULT_NAME = "default"
INVALID_VF_INDEX = -1

_RESOURCE_NAME = re.compile(r"[a-zA-Z0-9_]+")
_INTEGER = re.compile(r"[+-]?[0-9]+")


class PolicyValidationError(ValueError):
    """A custom resource was rejected; ``warnings`` holds what was noted before."""

    def __init__(self, message: str, warnings: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.warnings = list(warnings)


class SupportedNics:
    """The supported NIC models, each given as 'vendor device vf-device'."""

    def __init__(self, entries: Iterable[str]) -> None:
        models = []
        for entry in entries:
            fields = entry.split()
            if len(fields) != 3:
                raise ValueError(f"malformed NIC id entry: {entry!r}")
            models.append((fields[0], fields[1], fields[2]))
        self.models = models

    def is_supported_vendor(self, vendor: str) -> bool:
        """Tell whether any supported model is made by ``vendor``."""
        return any(model_vendor == vendor for model_vendor, _, _ in self.models)

    def is_supported_device(self, device_id: str) -> bool:
        """Tell whether any supported model has device id ``device_id``."""
        return any(model_device == device_id for _, model_device, _ in self.models)

    def is_supported_model(self, vendor: str, device_id: str) -> bool:
        """Tell whether the vendor and device id pair is supported."""
        return any(
            model_vendor == vendor and model_device == device_id
            for model_vendor, model_device, _ in self.models
        )


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be an object")
    return value


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    return [str(item) for item in value]


def _int(value: Any, what: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what} must be an integer")
    return value


@dataclass
class SriovNetworkNicSelector:
    """Which NICs of a node a policy applies to."""

    vendor: str = ""
    device_id: str = ""
    root_devices: list[str] = field(default_factory=list)
    pf_names: list[str] = field(default_factory=list)
    net_filter: str = ""


@dataclass
class SriovNetworkNodePolicySpec:
    """The desired configuration a policy asks for."""

    resource_name: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)
    priority: int = 0
    mtu: int = 0
    num_vfs: int = 0
    nic_selector: SriovNetworkNicSelector = field(default_factory=SriovNetworkNicSelector)
    device_type: str = ""
    is_rdma: bool = False
    link_type: str = ""
    eswitch_mode: str = ""


@dataclass
class Node:
    """A cluster node and its labels."""

    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class SriovNetworkNodePolicy:
    """A policy asking for virtual functions on selected NICs of selected nodes."""

    name: str = ""
    namespace: str = ""
    spec: SriovNetworkNodePolicySpec = field(default_factory=SriovNetworkNodePolicySpec)

    def selects(self, node: Node) -> bool:
        """Tell whether every label of the node selector is set on ``node``."""
        return all(node.labels.get(key) == value for key, value in self.spec.node_selector.items())

    @classmethod
    def from_dict(cls, raw: Any) -> SriovNetworkNodePolicy:
        """Build a policy from its JSON object form."""
        document = _mapping(raw, "policy")
        metadata = _mapping(document.get("metadata"), "metadata")
        spec = _mapping(document.get("spec"), "spec")
        selector = _mapping(spec.get("nicSelector"), "nicSelector")
        node_selector = _mapping(spec.get("nodeSelector"), "nodeSelector")
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            spec=SriovNetworkNodePolicySpec(
                resource_name=str(spec.get("resourceName") or ""),
                node_selector={str(k): str(v) for k, v in node_selector.items()},
                priority=_int(spec.get("priority"), "priority"),
                mtu=_int(spec.get("mtu"), "mtu"),
                num_vfs=_int(spec.get("numVfs"), "numVfs"),
                nic_selector=SriovNetworkNicSelector(
                    vendor=str(selector.get("vendor") or ""),
                    device_id=str(selector.get("deviceID") or ""),
                    root_devices=_string_list(selector.get("rootDevices"), "rootDevices"),
                    pf_names=_string_list(selector.get("pfNames"), "pfNames"),
                    net_filter=str(selector.get("netFilter") or ""),
                ),
                device_type=str(spec.get("deviceType") or ""),
                is_rdma=bool(spec.get("isRdma") or False),
                link_type=str(spec.get("linkType") or ""),
                eswitch_mode=str(spec.get("eSwitchMode") or ""),
            ),
        )


@dataclass
class SriovOperatorConfig:
    """The operator-wide configuration."""

    name: str = ""
    namespace: str = ""
    config_daemon_node_selector: dict[str, str] = field(default_factory=dict)
    disable_drain: bool = False
    enable_injector: bool | None = None
    enable_operator_webhook: bool | None = None
    log_level: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> SriovOperatorConfig:
        """Build a configuration from its JSON object form."""
        document = _mapping(raw, "config")
        metadata = _mapping(document.get("metadata"), "metadata")
        spec = _mapping(document.get("spec"), "spec")
        selector = _mapping(spec.get("configDaemonNodeSelector"), "configDaemonNodeSelector")
        injector = spec.get("enableInjector")
        webhook = spec.get("enableOperatorWebhook")
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            config_daemon_node_selector={str(k): str(v) for k, v in selector.items()},
            disable_drain=bool(spec.get("disableDrain") or False),
            enable_injector=None if injector is None else bool(injector),
            enable_operator_webhook=None if webhook is None else bool(webhook),
            log_level=_int(spec.get("logLevel"), "logLevel"),
        )


def _atoi(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def parse_pf_name(name: str) -> tuple[str, int, int]:
    """Split 'pf#start-end' into its name and VF range; without a range both are -1."""
    if "#" not in name:
        return name, INVALID_VF_INDEX, INVALID_VF_INDEX
    fields = name.split("#")
    bounds = fields[1].split("-")
    if len(bounds) != 2:
        raise ValueError(f"invalid VF index range in {name!r}")
    return fields[0], _atoi(bounds[0]), _atoi(bounds[1])


def validate_sriov_operator_config(config: SriovOperatorConfig, operation: str) -> list[str]:
    """Admit the default operator configuration; return its warnings."""
    log.debug("validating SriovOperatorConfig %s", config.name)
    warnings: list[str] = []
    if config.name != DEFAULT_NAME:
        raise PolicyValidationError("only default SriovOperatorConfig is used", warnings)
    if operation == "DELETE":
        raise PolicyValidationError("default SriovOperatorConfig shouldn't be deleted", warnings)
    if config.disable_drain:
        warnings.append(
            "Node draining is disabled for applying SriovNetworkNodePolicy, "
            "it may result in workload interruption."
        )
    return warnings


def validate_sriov_network_node_policy(
    policy: SriovNetworkNodePolicy,
    operation: str,
    nics: SupportedNics,
    namespace: str | None = None,
    nodes: Sequence[Node] = (),
    node_states: Sequence[NodeState] = (),
    policies: Sequence[SriovNetworkNodePolicy] = (),
) -> list[str]:
    """Admit a node policy and return its warnings; raise PolicyValidationError otherwise.

    ``namespace`` is the operator namespace, read from NAMESPACE when not given.
    """
    if namespace is None:
        namespace = os.environ.get("NAMESPACE", "")
    log.debug("validating SriovNetworkNodePolicy %s", policy.name)
    warnings: list[str] = []

    if policy.name == DEFAULT_NAME and policy.namespace == namespace:
        if operation == "DELETE":
            raise PolicyValidationError("default SriovNetworkNodePolicy shouldn't be deleted", warnings)
        return warnings

    if policy.namespace != namespace:
        warnings.append(
            policy.name + " is created or updated but not used. "
            "Only policy in openshift-sriov-network-operator namespace is respected."
        )

    if operation == "DELETE":
        return warnings

    try:
        static_validate_sriov_network_node_policy(policy, nics)
        dynamic_validate_sriov_network_node_policy(policy, nics, nodes, node_states, policies)
    except PolicyValidationError as exc:
        exc.warnings = warnings
        raise
    return warnings


def static_validate_sriov_network_node_policy(policy: SriovNetworkNodePolicy, nics: SupportedNics) -> bool:
    """Check a policy on its own; return True or raise PolicyValidationError."""
    spec = policy.spec
    selector = spec.nic_selector
    if not _RESOURCE_NAME.fullmatch(spec.resource_name):
        raise PolicyValidationError(
            f'resource name "{spec.resource_name}" contains invalid characters, the accepted '
            'syntax of the regular expressions is: "^[a-zA-Z0-9_]+$"'
        )

    if not (selector.vendor or selector.device_id or selector.pf_names or selector.root_devices):
        raise PolicyValidationError(
            "at least one of these parameters (vendor, deviceID, pfNames or rootDevices) "
            f"has to be defined in nicSelector in CR {policy.name}"
        )

    if selector.vendor:
        if not nics.is_supported_vendor(selector.vendor):
            raise PolicyValidationError(f"vendor {selector.vendor} is not supported")
        if selector.device_id and not nics.is_supported_model(selector.vendor, selector.device_id):
            raise PolicyValidationError(
                f"vendor/device {selector.vendor}/{selector.device_id} is not supported"
            )
    elif selector.device_id and not nics.is_supported_device(selector.device_id):
        raise PolicyValidationError(f"device {selector.device_id} is not supported")

    for pf in selector.pf_names:
        if "#" not in pf:
            continue
        fields = pf.split("#")
        if len(fields) != 2:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name in nicSelector, probably incorrect separator character usage"
            )
        bounds = fields[1].split("-")
        if len(bounds) != 2:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name nicSelector, probably incorrect range character usage"
            )
        try:
            start = _atoi(bounds[0])
        except ValueError:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name nicSelector, start range is incorrect"
            ) from None
        try:
            end = _atoi(bounds[1])
        except ValueError:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name nicSelector, end range is incorrect"
            ) from None
        if end < start:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name nicSelector, end range shall not be smaller than start range"
            )
        if not end < spec.num_vfs:
            raise PolicyValidationError(
                f"failed to parse {pf} PF name nicSelector, end range exceeds the maximum VF index "
            )

    if spec.device_type == "vfio-pci" and spec.is_rdma:
        raise PolicyValidationError(
            "'deviceType: vfio-pci' conflicts with 'isRdma: true'; Set 'deviceType' to "
            "(string)'netdevice' Or Set 'isRdma' to (bool)'false'"
        )
    if spec.link_type.lower() == "ib" and not spec.is_rdma:
        raise PolicyValidationError(
            "'linkType: ib or IB' requires 'isRdma: true'; Set 'isRdma' to (bool)'true'"
        )
    return True


def dynamic_validate_sriov_network_node_policy(
    policy: SriovNetworkNodePolicy,
    nics: SupportedNics,
    nodes: Sequence[Node],
    node_states: Sequence[NodeState],
    policies: Sequence[SriovNetworkNodePolicy],
) -> bool:
    """Check a policy against the cluster's nodes, node states and other policies."""
    nodes_selected = False
    interface_selected = False
    for node in nodes:
        if not policy.selects(node):
            continue
        nodes_selected = True
        for state in node_states:
            if state.name == node.name:
                if validate_policy_for_node_state(policy, state, nics):
                    interface_selected = True
        for other in policies:
            if other.name != policy.name and other.selects(node):
                validate_policy_for_node_policy(policy, other)

    if not nodes_selected:
        raise PolicyValidationError(
            f"no matched node is selected by the nodeSelector in CR {policy.name}"
        )
    if not interface_selected:
        raise PolicyValidationError(
            f"no supported NIC is selected by the nicSelector in CR {policy.name}"
        )
    return True


def validate_policy_for_node_state(
    policy: SriovNetworkNodePolicy, state: NodeState, nics: SupportedNics
) -> bool:
    """Check a policy against one node's interfaces.

    Returns whether any interface of the node is selected by the policy;
    raises PolicyValidationError when the VF count is not allowed.
    """
    log.debug("validating policy %s for node %s", policy.name, state.name)
    selected = False
    num_vfs = policy.spec.num_vfs
    for iface in state.status.interfaces:
        if not validate_nic_model(policy.spec.nic_selector, iface, nics):
            continue
        selected = True
        if policy.name != DEFAULT_NAME and num_vfs == 0:
            raise PolicyValidationError(f"numVfs({num_vfs}) in CR {policy.name} is not allowed")
        if num_vfs > iface.total_vfs and iface.vendor == INTEL_ID:
            raise PolicyValidationError(
                f"numVfs({num_vfs}) in CR {policy.name} exceed the maximum allowed value({iface.total_vfs})"
            )
        if num_vfs > MLX_MAX_VFS and iface.vendor == MELLANOX_ID:
            raise PolicyValidationError(
                f"numVfs({num_vfs}) in CR {policy.name} exceed the maximum allowed value({MLX_MAX_VFS})"
            )
    return selected


def validate_policy_for_node_policy(
    current: SriovNetworkNodePolicy, previous: SriovNetworkNodePolicy
) -> bool:
    """Check that the VF ranges of two policies on the same PF do not overlap."""
    log.debug("validating policy %s against policy %s", current.name, previous.name)
    if current.name == previous.name:
        return True

    for cur_pf in current.spec.nic_selector.pf_names:
        try:
            cur_name, cur_start, cur_end = parse_pf_name(cur_pf)
        except ValueError:
            raise PolicyValidationError(f"invalid PF name: {cur_pf}") from None
        for pre_pf in previous.spec.nic_selector.pf_names:
            # The previous policy was validated when it was admitted.
            try:
                pre_name, pre_start, pre_end = parse_pf_name(pre_pf)
            except ValueError:
                pre_name, pre_start, pre_end = pre_pf.split("#")[0], INVALID_VF_INDEX, INVALID_VF_INDEX
            if cur_name == pre_name:
                if cur_end < pre_start or cur_start > pre_end:
                    return True
                raise PolicyValidationError(
                    f"VF index range in {cur_pf} is overlapped with existing policy {previous.name}"
                )
    return True


def validate_nic_model(
    selector: SriovNetworkNicSelector, iface: InterfaceExt, nics: SupportedNics
) -> bool:
    """Tell whether the selector picks ``iface`` and the interface is a supported model."""
    if selector.vendor and selector.vendor != iface.vendor:
        return False
    if selector.device_id and selector.device_id != iface.device_id:
        return False
    if selector.root_devices and iface.pci_address not in selector.root_devices:
        return False
    if selector.pf_names:
        pf_names = [pf.split("#")[0] for pf in selector.pf_names]
        if iface.name not in pf_names:
            return False
    return nics.is_supported_model(iface.vendor, iface.device_id)