"""Defaults filled into node policies on admission."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

PATCH_TYPE_JSON_PATCH = "JSONPatch"

DEFAULT_PRIORITY_PATCH = {"op": "add", "path": "/spec/priority", "value": 99}
DEFAULT_DEVICE_TYPE_PATCH = {"op": "add", "path": "/spec/deviceType", "value": "netdevice"}
DEFAULT_IS_RDMA_PATCH = {"op": "add", "path": "/spec/isRdma", "value": False}
DEFAULT_LINK_TYPE_PATCH = {"op": "add", "path": "/spec/linkType", "value": "eth"}
INFINIBAND_IS_RDMA_PATCH = {"op": "add", "path": "/spec/isRdma", "value": True}


@dataclass
class AdmissionResponse:
    """The answer to an admission review."""

    allowed: bool = False
    patch: bytes | None = None
    patch_type: str | None = None
    warnings: list[str] = field(default_factory=list)
    result: dict[str, str] | None = None


def mutate_sriov_network_node_policy(cr: dict[str, Any]) -> AdmissionResponse:
    """Return a JSON patch adding defaults for unset policy fields.

    The default policy is left alone. Raises ValueError for a malformed object.
    """
    response = AdmissionResponse(allowed=True)
    metadata = cr.get("metadata")
    spec = cr.get("spec")
    if not isinstance(metadata, dict):
        raise ValueError("custom resource has no metadata object")
    name = metadata.get("name")
    if name == "default":
        return response
    if not isinstance(spec, dict):
        raise ValueError("custom resource has no spec object")

    patches = []
    if "priority" not in spec:
        log.debug("setting default priority to lowest for %s", name)
        patches.append(DEFAULT_PRIORITY_PATCH)
    if "deviceType" not in spec:
        log.debug("setting default deviceType to netdevice for %s", name)
        patches.append(DEFAULT_DEVICE_TYPE_PATCH)
    if "isRdma" not in spec:
        log.debug("setting default isRdma to false for %s", name)
        patches.append(DEFAULT_IS_RDMA_PATCH)
    if "linkType" not in spec:
        log.debug("setting default linkType to eth for %s", name)
        patches.append(DEFAULT_LINK_TYPE_PATCH)
    link_type = spec.get("linkType")
    if isinstance(link_type, str) and link_type.lower() == "ib":
        # InfiniBand links require RDMA.
        log.debug("setting isRdma to true for %s since ib link type is detected", name)
        patches.append(INFINIBAND_IS_RDMA_PATCH)

    response.patch = json.dumps(patches, separators=(",", ":")).encode("utf-8")
    response.patch_type = PATCH_TYPE_JSON_PATCH
    return response