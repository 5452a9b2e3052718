"""Health Check Provisioner.

Finds, creates, updates and deletes Route 53 health checks for HealthCheck
resources. A check is identified by its caller reference, derived from the
owning resource's identity and revision, so a check created on an earlier
attempt is found again even if its id was never written back.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .models import (
    ConfigurationError,
    Endpoint,
    HealthCheck,
    HealthCheckProtocol,
    HealthCheckSpec,
    ProviderError,
    ServiceType,
)
from .route53 import error_code

logger = logging.getLogger(__name__)

FAST_REQUEST_INTERVAL = 10
STANDARD_REQUEST_INTERVAL = 30
DEFAULT_FAILURE_THRESHOLD = 3
TAG_RESOURCE_TYPE = "healthcheck"


def caller_reference(hc: HealthCheck) -> str:
    return f"{hc.namespace}/{hc.name}/{hc.resource_version}"


def request_interval(spec: HealthCheckSpec) -> int:
    return FAST_REQUEST_INTERVAL if spec.fast_interval else STANDARD_REQUEST_INTERVAL


def check_type(spec: HealthCheckSpec) -> str:
    """Return the Route 53 health check type for a spec."""
    if spec.search_string and spec.protocol != HealthCheckProtocol.TCP:
        return f"{spec.protocol.value}_STR_MATCH"
    return spec.protocol.value


def validate_spec(spec: HealthCheckSpec) -> None:
    """Raise ConfigurationError if the spec cannot be sent to Route 53."""
    if not 1 <= spec.port <= 65535:
        raise ConfigurationError(f"health check port {spec.port} is out of range")
    if bool(spec.address) == bool(spec.hostname):
        raise ConfigurationError("health check needs exactly one of endpoint address or hostname")
    if not 1 <= spec.failure_threshold <= 10:
        raise ConfigurationError(
            f"health check failure threshold must be between 1 and 10, got {spec.failure_threshold}"
        )
    if spec.protocol == HealthCheckProtocol.TCP and spec.search_string:
        raise ConfigurationError("TCP health checks cannot match a search string")


def _mutable_fields(spec: HealthCheckSpec) -> Dict[str, Any]:
    """Fields accepted by both create and update."""
    fields: Dict[str, Any] = {
        "Port": spec.port,
        "FailureThreshold": spec.failure_threshold,
        "Inverted": spec.invert,
        "Disabled": not spec.enabled,
    }
    if spec.address:
        fields["IPAddress"] = spec.address
    if spec.hostname:
        fields["FullyQualifiedDomainName"] = spec.hostname
    if spec.protocol != HealthCheckProtocol.TCP:
        fields["ResourcePath"] = spec.path or "/"
        fields["EnableSNI"] = True
        if spec.search_string:
            fields["SearchString"] = spec.search_string
    return fields


def build_create_config(spec: HealthCheckSpec) -> Dict[str, Any]:
    config = _mutable_fields(spec)
    config["Type"] = check_type(spec)
    # RequestInterval and MeasureLatency cannot change after creation.
    config["RequestInterval"] = request_interval(spec)
    if spec.measure_latency:
        config["MeasureLatency"] = True
    return config


# =============================================================================
# Provisioner
# =============================================================================


class HealthCheckProvisioner:
    """Keeps one Route 53 health check per HealthCheck resource."""

    def __init__(self, route53_client: Any):
        self._client = route53_client

    def find_by_caller_reference(self, reference: str) -> Optional[str]:
        """Return the id of the health check created with ``reference``."""
        try:
            paginator = self._client.get_paginator("list_health_checks")
            for page in paginator.paginate():
                for check in page.get("HealthChecks", []):
                    if check.get("CallerReference") == reference:
                        return check["Id"]
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"list_health_checks failed: {e}") from e
        return None

    def ensure(self, hc: HealthCheck) -> HealthCheck:
        """Create or update the health check; return ``hc`` with its id set.

        Raises:
            ConfigurationError: If the spec is invalid.
            ProviderError: If any Route 53 call (including tagging) fails.
        """
        validate_spec(hc.spec)
        reference = caller_reference(hc)

        health_check_id = self.find_by_caller_reference(reference) or hc.status.id
        if health_check_id:
            health_check_id = self._update(health_check_id, hc, reference)
        else:
            health_check_id = self._create(hc, reference)

        self._tag(health_check_id, hc.qualified_name)
        return replace(hc, status=replace(hc.status, id=health_check_id))

    def delete(self, hc: HealthCheck) -> HealthCheck:
        """Delete the health check; return ``hc`` with its id cleared."""
        health_check_id = hc.status.id
        if not health_check_id:
            logger.debug(f"Health check {hc.qualified_name} has no id, nothing to delete")
            return hc

        try:
            self._client.delete_health_check(HealthCheckId=health_check_id)
            logger.info(f"Deleted health check {health_check_id} ({hc.qualified_name})")
        except ClientError as e:
            if error_code(e) != "NoSuchHealthCheck":
                raise ProviderError(f"delete_health_check({health_check_id}) failed: {e}") from e
            logger.info(f"Health check {health_check_id} ({hc.qualified_name}) already deleted")
        except BotoCoreError as e:
            raise ProviderError(f"delete_health_check({health_check_id}) failed: {e}") from e

        return replace(hc, status=replace(hc.status, id=""))

    def _create(self, hc: HealthCheck, reference: str) -> str:
        try:
            response = self._client.create_health_check(
                CallerReference=reference,
                HealthCheckConfig=build_create_config(hc.spec),
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"create_health_check({reference}) failed: {e}") from e
        health_check_id = response["HealthCheck"]["Id"]
        logger.info(f"Created health check {health_check_id} for {hc.qualified_name}")
        return health_check_id

    def _update(self, health_check_id: str, hc: HealthCheck, reference: str) -> str:
        try:
            response = self._client.update_health_check(
                HealthCheckId=health_check_id,
                **_mutable_fields(hc.spec),
            )
        except ClientError as e:
            if error_code(e) == "NoSuchHealthCheck":
                logger.warning(
                    f"Health check {health_check_id} for {hc.qualified_name} no longer exists, recreating"
                )
                return self._create(hc, reference)
            raise ProviderError(f"update_health_check({health_check_id}) failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"update_health_check({health_check_id}) failed: {e}") from e
        logger.info(f"Updated health check {health_check_id} for {hc.qualified_name}")
        return response["HealthCheck"]["Id"]

    def _tag(self, health_check_id: str, name: str) -> None:
        try:
            self._client.change_tags_for_resource(
                ResourceType=TAG_RESOURCE_TYPE,
                ResourceId=health_check_id,
                AddTags=[{"Key": "Name", "Value": name}],
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"tagging health check {health_check_id} failed: {e}") from e


# =============================================================================
# Resource Derivation
# =============================================================================


def build_health_check_resource(endpoint: Endpoint) -> Optional[HealthCheck]:
    """Derive the HealthCheck resource for an endpoint that requested one.

    ExternalName endpoints have nothing to health check and get None.
    """
    if endpoint.type == ServiceType.EXTERNAL_NAME:
        return None
    if not endpoint.ports:
        raise ConfigurationError(f"{endpoint.namespace}/{endpoint.name}: no ports were found")
    if not endpoint.ingress:
        raise ConfigurationError(f"{endpoint.namespace}/{endpoint.name}: no load balancer ingress was found")

    port = endpoint.ports[0].port
    if endpoint.type == ServiceType.NODE_PORT:
        port = endpoint.ports[0].node_port

    ingress = endpoint.ingress[0]
    return HealthCheck(
        namespace=endpoint.namespace,
        name=endpoint.name,
        spec=HealthCheckSpec(
            protocol=HealthCheckProtocol.TCP,
            port=port,
            enabled=True,
            invert=False,
            address=ingress.ip,
            hostname="" if ingress.ip else ingress.hostname,
            failure_threshold=DEFAULT_FAILURE_THRESHOLD,
            fast_interval=True,
        ),
    )
