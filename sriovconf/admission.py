"""Entry points for mutating and validating admission reviews."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from sriovconf.models import NodeState
from sriovconf.mutate import AdmissionResponse, mutate_sriov_network_node_policy
from sriovconf.validate import (
    Node,
    PolicyValidationError,
    SriovNetworkNodePolicy,
    SriovOperatorConfig,
    SupportedNics,
    validate_sriov_network_node_policy,
    validate_sriov_operator_config,
)

log = logging.getLogger(__name__)


def _error_response(error: Exception) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, result={"message": str(error)})


def _request(review: dict[str, Any]) -> dict[str, Any]:
    request = review.get("request")
    if not isinstance(request, dict):
        raise ValueError("admission review has no request")
    return request


def _decode_object(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray, str)):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("object is not a JSON object")
    return raw


def mutate_custom_resource(review: dict[str, Any]) -> AdmissionResponse:
    """Answer a mutating review of a node policy with a defaults patch."""
    log.debug("mutating custom resource")
    try:
        cr = _decode_object(_request(review).get("object"))
        return mutate_sriov_network_node_policy(cr)
    except ValueError as exc:
        log.error("%s", exc)
        return _error_response(exc)


def validate_custom_resource(
    review: dict[str, Any],
    nics: SupportedNics,
    namespace: str | None = None,
    nodes: Sequence[Node] = (),
    node_states: Sequence[NodeState] = (),
    policies: Sequence[SriovNetworkNodePolicy] = (),
) -> AdmissionResponse:
    """Answer a validating review of a node policy or operator configuration."""
    log.debug("validating custom resource")
    response = AdmissionResponse(allowed=True)
    try:
        request = _request(review)
        operation = str(request.get("operation") or "")
        raw = request.get("oldObject") if operation == "DELETE" else request.get("object")
        kind = (request.get("kind") or {}).get("kind")

        if kind == "SriovNetworkNodePolicy":
            policy = SriovNetworkNodePolicy.from_dict(_decode_object(raw))
            try:
                response.warnings = validate_sriov_network_node_policy(
                    policy, operation, nics, namespace, nodes, node_states, policies
                )
            except PolicyValidationError as exc:
                response.allowed = False
                response.warnings = exc.warnings
                response.result = {"reason": str(exc)}
        elif kind == "SriovOperatorConfig":
            config = SriovOperatorConfig.from_dict(_decode_object(raw))
            try:
                response.warnings = validate_sriov_operator_config(config, operation)
            except PolicyValidationError as exc:
                response.allowed = False
                response.warnings = exc.warnings
                response.result = {"reason": str(exc)}
    except (ValueError, AttributeError) as exc:
        log.error("%s", exc)
        return _error_response(exc)
    return response