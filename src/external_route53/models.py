"""Data model and error taxonomy for external-route53."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

# =============================================================================
# Errors
# =============================================================================


class ExternalRoute53Error(Exception):
    """Base class for every failure surfaced by the reconciliation core."""

    retryable = False


class ConfigurationError(ExternalRoute53Error):
    """Declared state is malformed or incomplete. Fix it at the source."""


class OwnershipConflictError(ExternalRoute53Error):
    """The DNS name is managed by another system."""


class ResolutionError(ExternalRoute53Error):
    """The alias target's load balancer could not be resolved."""

    retryable = True


class ProviderError(ExternalRoute53Error):
    """A call to Route 53 or ELB failed."""

    retryable = True


# =============================================================================
# Enums
# =============================================================================


class ServiceType(Enum):
    LOAD_BALANCER = "LoadBalancer"
    EXTERNAL_NAME = "ExternalName"
    NODE_PORT = "NodePort"
    CLUSTER_IP = "ClusterIP"


class HealthCheckProtocol(Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    TCP = "TCP"


class HealthCheckResult(Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


# =============================================================================
# Endpoints
# =============================================================================


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a queued object."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.namespace}/{self.name}"


@dataclass(frozen=True)
class LoadBalancerIngress:
    """An ingress point assigned to a load balancer service."""

    ip: str = ""
    hostname: str = ""


@dataclass(frozen=True)
class ServicePort:
    port: int
    node_port: int = 0


@dataclass(frozen=True)
class Endpoint:
    """Declared state of a network endpoint (a Service)."""

    namespace: str
    name: str
    uid: str = ""
    type: ServiceType = ServiceType.LOAD_BALANCER
    annotations: Dict[str, str] = field(default_factory=dict)
    external_name: str = ""
    ingress: List[LoadBalancerIngress] = field(default_factory=list)
    ports: List[ServicePort] = field(default_factory=list)
    deleting: bool = False

    @property
    def key(self) -> ObjectKey:
        return ObjectKey("Service", self.namespace, self.name)


# =============================================================================
# Record Intent
# =============================================================================


@dataclass(frozen=True)
class RecordIntent:
    """Normalized request for one DNS name.

    Built fresh from an endpoint on every reconcile pass and never persisted.
    Exactly one of ``target_hostname`` (alias) and ``target_ip_address``
    (address record) is set.
    """

    hostname: str
    hosted_zone_id: str
    set_identifier: str
    record_type: str = "A"
    weight: int = 1
    ttl: int = 10
    is_alias: bool = False
    target_hostname: str = ""
    target_ip_address: str = ""
    health_check_id: Optional[str] = None
    alias_target_zone_id: Optional[str] = None
    txt_prefix: str = "extr53-"

    @property
    def marker_name(self) -> str:
        return f"{self.txt_prefix}{self.hostname}"


# =============================================================================
# Health Checks
# =============================================================================


@dataclass(frozen=True)
class HealthCheckSpec:
    """Desired configuration of a Route 53 health check."""

    protocol: HealthCheckProtocol
    port: int
    enabled: bool = True
    invert: bool = False
    path: str = ""
    address: str = ""
    hostname: str = ""
    failure_threshold: int = 3
    fast_interval: bool = False
    search_string: str = ""
    measure_latency: bool = False


@dataclass(frozen=True)
class HealthCheckStatus:
    id: str = ""
    result: Optional[HealthCheckResult] = None
    observed_generation: int = 0


@dataclass(frozen=True)
class HealthCheck:
    """A HealthCheck resource: desired spec plus observed status."""

    namespace: str
    name: str
    spec: HealthCheckSpec
    status: HealthCheckStatus = field(default_factory=HealthCheckStatus)
    resource_version: str = ""
    generation: int = 1
    deleting: bool = False

    @property
    def key(self) -> ObjectKey:
        return ObjectKey("HealthCheck", self.namespace, self.name)

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}"
