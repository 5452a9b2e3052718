"""Annotation Interpreter.

Turns an endpoint's declared annotations and observed load balancer state
into a validated :class:`RecordIntent`. Nothing in this module touches the
network; alias zone resolution happens later in :mod:`external_route53.route53`.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from .models import ConfigurationError, Endpoint, RecordIntent, ServiceType

logger = logging.getLogger(__name__)

# =============================================================================
# Annotation Keys
# =============================================================================

HOSTNAME_ANNOTATION = "external-dns.alpha.kubernetes.io/hostname"
TTL_ANNOTATION = "external-dns.alpha.kubernetes.io/ttl"
ALIAS_ANNOTATION = "external-dns.alpha.kubernetes.io/alias"
HEALTH_CHECK_ID_ANNOTATION = "external-dns.alpha.kubernetes.io/aws-health-check-id"
WEIGHT_ANNOTATION = "external-dns.alpha.kubernetes.io/aws-weight"
SET_IDENTIFIER_ANNOTATION = "external-dns.alpha.kubernetes.io/set-identifier"
RECORD_TYPE_ANNOTATION = "external-route53.io/record-type"
HEALTH_CHECK_ANNOTATION = "external-route53.io/health-check"
HOSTED_ZONE_ID_ANNOTATION = "external-route53.io/hosted-zone-id"

DEFAULT_WEIGHT = 1
DEFAULT_TTL = 10
DEFAULT_RECORD_TYPE = "A"
MIN_TTL = 10
MAX_WEIGHT = 255
SUPPORTED_RECORD_TYPES = frozenset({"A"})

_TRUE_VALUES = {"1", "t", "true"}
_FALSE_VALUES = {"0", "f", "false"}


# =============================================================================
# Parsing Helpers
# =============================================================================


def parse_bool(value: Any, *, default: bool = False) -> bool:
    """Parse a boolean. Unrecognized spellings raise ValueError."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value {value!r}")


def _parse_int_annotation(annotations: Dict[str, str], key: str, default: int) -> int:
    raw = annotations.get(key)
    if raw is None:
        return default
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise ConfigurationError(f"annotation {key}={raw!r} is not an integer") from e


def health_check_requested(endpoint: Endpoint) -> bool:
    """Return True when the endpoint asked for a health check to be created."""
    return endpoint.annotations.get(HEALTH_CHECK_ANNOTATION, "").strip().lower() == "true"


def default_set_identifier(endpoint: Endpoint) -> str:
    return f"{endpoint.namespace}/{endpoint.name}/{endpoint.uid}"


# =============================================================================
# Interpreter
# =============================================================================


def _infer_alias(endpoint: Endpoint) -> bool:
    if endpoint.type == ServiceType.EXTERNAL_NAME:
        return True
    if endpoint.type == ServiceType.LOAD_BALANCER:
        if not endpoint.ingress:
            return False
        return not endpoint.ingress[0].ip
    return False


def _select_target(endpoint: Endpoint) -> tuple[str, str]:
    """Return ``(target_hostname, target_ip_address)`` for the endpoint."""
    if endpoint.type == ServiceType.EXTERNAL_NAME:
        return endpoint.external_name, ""
    if endpoint.type == ServiceType.LOAD_BALANCER and endpoint.ingress:
        first = endpoint.ingress[0]
        if first.ip:
            return "", first.ip
        return first.hostname, ""
    return "", ""


def build_record_intent(
    endpoint: Endpoint,
    default_hosted_zone_id: str = "",
    txt_prefix: str = "extr53-",
) -> RecordIntent:
    """Build a validated RecordIntent from an endpoint's declared state.

    Args:
        endpoint: The endpoint to interpret.
        default_hosted_zone_id: Zone used when no hosted-zone annotation is set.
        txt_prefix: Prefix of the ownership marker record name.

    Raises:
        ConfigurationError: If the declared state cannot produce a valid intent.
    """
    annotations = endpoint.annotations

    weight = _parse_int_annotation(annotations, WEIGHT_ANNOTATION, DEFAULT_WEIGHT)
    ttl = _parse_int_annotation(annotations, TTL_ANNOTATION, DEFAULT_TTL)

    if ALIAS_ANNOTATION in annotations:
        try:
            is_alias = parse_bool(annotations[ALIAS_ANNOTATION])
        except ValueError as e:
            raise ConfigurationError(f"annotation {ALIAS_ANNOTATION}: {e}") from e
    else:
        is_alias = _infer_alias(endpoint)

    target_hostname, target_ip_address = _select_target(endpoint)
    # An explicit alias flag picks which target field is used.
    if is_alias:
        target_ip_address = ""
    else:
        target_hostname = ""

    set_identifier = annotations.get(SET_IDENTIFIER_ANNOTATION)
    if set_identifier is None:
        set_identifier = default_set_identifier(endpoint)

    intent = RecordIntent(
        hostname=annotations.get(HOSTNAME_ANNOTATION, "").strip(),
        hosted_zone_id=annotations.get(HOSTED_ZONE_ID_ANNOTATION, default_hosted_zone_id).strip(),
        set_identifier=set_identifier,
        record_type=annotations.get(RECORD_TYPE_ANNOTATION, DEFAULT_RECORD_TYPE).strip(),
        weight=weight,
        ttl=ttl,
        is_alias=is_alias,
        target_hostname=target_hostname,
        target_ip_address=target_ip_address,
        health_check_id=annotations.get(HEALTH_CHECK_ID_ANNOTATION) or None,
        txt_prefix=txt_prefix,
    )
    validate_record_intent(intent)
    logger.debug(f"Interpreted {endpoint.namespace}/{endpoint.name} as {intent}")
    return intent


def validate_record_intent(intent: RecordIntent) -> None:
    """Run every static check on an intent.

    Raises:
        ConfigurationError: On the first violated rule.
    """
    if not intent.hosted_zone_id:
        raise ConfigurationError("hosted zone id is not set")
    if not intent.hostname:
        raise ConfigurationError("hostname is not set")
    if not intent.set_identifier:
        raise ConfigurationError("set identifier is not set")
    if intent.record_type not in SUPPORTED_RECORD_TYPES:
        raise ConfigurationError(f"record type {intent.record_type!r} is not supported")
    if intent.ttl < MIN_TTL:
        raise ConfigurationError(f"TTL must be at least {MIN_TTL}s, got {intent.ttl}")
    if not 0 <= intent.weight <= MAX_WEIGHT:
        raise ConfigurationError(f"weight must be between 0 and {MAX_WEIGHT}, got {intent.weight}")
    if intent.is_alias:
        if not intent.target_hostname:
            raise ConfigurationError("alias record enabled but target hostname is not set")
        if intent.target_ip_address:
            raise ConfigurationError("alias record must not carry a target IP address")
    else:
        if not intent.target_ip_address:
            raise ConfigurationError("alias record disabled but target IP address is not set")
        if intent.target_hostname:
            raise ConfigurationError("address record must not carry a target hostname")


def annotate(endpoint: Endpoint, updates: Dict[str, Optional[str]]) -> Endpoint:
    """Return a copy of the endpoint with annotations set (or removed when None)."""
    annotations = dict(endpoint.annotations)
    for key, value in updates.items():
        if value is None:
            annotations.pop(key, None)
        else:
            annotations[key] = value
    return replace(endpoint, annotations=annotations)
