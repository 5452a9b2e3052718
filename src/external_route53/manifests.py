"""Manifest-backed resource store.

Lets the controller run without a cluster: Services and HealthChecks are
declared as Kubernetes-shaped YAML documents in a file or a directory of
``*.yaml`` files. Everything the controller writes back (health check ids,
HealthCheck status, HealthChecks it derived itself) and the last-seen
declaration of every object is kept in a JSON state file, so an object removed
from the manifests is still known, and reported as deleting, until the
controller has cleaned up after it.

Example::

    kind: Service
    metadata:
      name: web
      namespace: shop
      uid: 5b1c...
      annotations:
        external-dns.alpha.kubernetes.io/hostname: web.example.net
        external-route53.io/health-check: "true"
    spec:
      type: LoadBalancer
      ports:
        - port: 443
    status:
      loadBalancer:
        ingress:
          - ip: 203.0.113.10
    ---
    kind: HealthCheck
    metadata:
      name: api
      namespace: shop
    spec:
      protocol: HTTPS
      port: 443
      path: /healthz
      endpoint:
        hostname: api.example.net
      failureThreshold: 3
      features:
        fastInterval: true
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .annotations import HEALTH_CHECK_ID_ANNOTATION, parse_bool
from .controller import ResourceStore
from .models import (
    Endpoint,
    HealthCheck,
    HealthCheckProtocol,
    HealthCheckResult,
    HealthCheckSpec,
    HealthCheckStatus,
    LoadBalancerIngress,
    ServicePort,
    ServiceType,
)

logger = logging.getLogger(__name__)

# Annotations the controller itself may write.
WRITABLE_ANNOTATIONS = frozenset({HEALTH_CHECK_ID_ANNOTATION})

ORIGIN_MANIFEST = "manifest"
ORIGIN_CONTROLLER = "controller"

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml manifest files in a directory, or return the single file.

    Args:
        config_path: Path to a manifest file or directory

    Returns:
        List of manifest file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    """Get modification times for all config files."""
    return {f: get_config_file_mtime(f) for f in config_files}


# =============================================================================
# State Management
# =============================================================================


def _empty_state() -> Dict[str, Any]:
    return {"version": 1, "endpoints": {}, "health_checks": {}}


class StateStore:
    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_state()
        try:
            state = json.loads(self.path.read_text("utf-8"))
        except Exception as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return _empty_state()
        state.setdefault("version", 1)
        state.setdefault("endpoints", {})
        state.setdefault("health_checks", {})
        return state

    def save(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)


# =============================================================================
# Manifest Parsing
# =============================================================================


def _qualified(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _metadata(doc: Dict[str, Any]) -> Tuple[str, str]:
    metadata = doc.get("metadata") or {}
    name = str(metadata.get("name") or "").strip()
    namespace = str(metadata.get("namespace") or "default").strip()
    if not name:
        raise ValueError("metadata.name is required")
    return namespace, name


def _manifest_annotations(doc: Dict[str, Any]) -> Dict[str, str]:
    metadata = doc.get("metadata") or {}
    return {str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()}


def _lifetime_token() -> str:
    # Distinguishes a re-created object from an earlier one of the same name.
    return uuid.uuid4().hex[:12]


def endpoint_from_manifest(doc: Dict[str, Any], deleting: bool = False) -> Endpoint:
    """Build an Endpoint from a ``kind: Service`` document."""
    namespace, name = _metadata(doc)
    metadata = doc.get("metadata") or {}
    spec = doc.get("spec") or {}
    status = doc.get("status") or {}

    service_type = ServiceType(spec.get("type") or "ClusterIP")
    annotations = _manifest_annotations(doc)

    ingress = [
        LoadBalancerIngress(ip=str(item.get("ip") or ""), hostname=str(item.get("hostname") or ""))
        for item in ((status.get("loadBalancer") or {}).get("ingress") or [])
        if isinstance(item, dict)
    ]
    ports = [
        ServicePort(port=int(item.get("port") or 0), node_port=int(item.get("nodePort") or 0))
        for item in (spec.get("ports") or [])
        if isinstance(item, dict)
    ]

    return Endpoint(
        namespace=namespace,
        name=name,
        uid=str(metadata.get("uid") or ""),
        type=service_type,
        annotations=annotations,
        external_name=str(spec.get("externalName") or ""),
        ingress=ingress,
        ports=ports,
        deleting=deleting,
    )


def health_check_spec_from_dict(spec: Dict[str, Any]) -> HealthCheckSpec:
    """Build a HealthCheckSpec from a HealthCheck document's ``spec``.

    Raises:
        ValueError: On an unknown protocol or a malformed number or boolean.
    """
    endpoint = spec.get("endpoint") or {}
    features = spec.get("features") or {}
    return HealthCheckSpec(
        protocol=HealthCheckProtocol(str(spec.get("protocol") or "TCP").upper()),
        port=int(spec.get("port") or 0),
        enabled=parse_bool(spec.get("enabled"), default=True),
        invert=parse_bool(spec.get("invert")),
        path=str(spec.get("path") or ""),
        address=str(endpoint.get("address") or ""),
        hostname=str(endpoint.get("hostname") or ""),
        failure_threshold=int(spec.get("failureThreshold") or 3),
        fast_interval=parse_bool(features.get("fastInterval")),
        search_string=str(features.get("searchString") or ""),
        measure_latency=parse_bool(features.get("latencyGraph")),
    )


def health_check_spec_to_dict(spec: HealthCheckSpec) -> Dict[str, Any]:
    endpoint: Dict[str, Any] = {}
    if spec.address:
        endpoint["address"] = spec.address
    if spec.hostname:
        endpoint["hostname"] = spec.hostname
    return {
        "protocol": spec.protocol.value,
        "port": spec.port,
        "enabled": spec.enabled,
        "invert": spec.invert,
        "path": spec.path,
        "endpoint": endpoint,
        "failureThreshold": spec.failure_threshold,
        "features": {
            "fastInterval": spec.fast_interval,
            "searchString": spec.search_string,
            "latencyGraph": spec.measure_latency,
        },
    }


def _resource_version(entry: Dict[str, Any], generation: int) -> str:
    """Declared resourceVersion, else one unique to this entry's lifetime and generation."""
    if entry.get("resourceVersion"):
        return str(entry["resourceVersion"])
    if entry.get("uid"):
        return f"{entry['uid']}-{generation}"
    return str(generation)


def _spec_digest(spec: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(spec, sort_keys=True).encode("utf-8")).hexdigest()[:16]


def load_manifests(config_path: str) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Dict[str, Any]]]:
    """Load Service and HealthCheck documents keyed by ``namespace/name``.

    Malformed documents are logged and skipped.
    """
    services: Dict[str, Dict[str, Any]] = {}
    health_checks: Dict[str, Dict[str, Any]] = {}

    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                documents = [d for d in yaml.safe_load_all(f) if d]
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load manifests from {config_file}: {e}")
            continue

        for doc in documents:
            if not isinstance(doc, dict):
                logger.warning(f"Skipping non-mapping document in {config_file}")
                continue
            kind = doc.get("kind")
            try:
                namespace, name = _metadata(doc)
                if kind == "Service":
                    endpoint_from_manifest(doc)
                    services[_qualified(namespace, name)] = doc
                elif kind == "HealthCheck":
                    health_check_spec_from_dict(doc.get("spec") or {})
                    health_checks[_qualified(namespace, name)] = doc
                else:
                    logger.debug(f"Ignoring {kind!r} document in {config_file}")
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed {kind} document in {config_file}: {e}")

    return services, health_checks


# =============================================================================
# Manifest Store
# =============================================================================


class ManifestStore(ResourceStore):
    """ResourceStore backed by YAML manifests plus a JSON state file."""

    def __init__(self, config_path: str, state_store: StateStore):
        self._config_path = config_path
        self._state_store = state_store
        self._services: Dict[str, Dict[str, Any]] = {}
        self._health_checks: Dict[str, Dict[str, Any]] = {}
        self._state = state_store.load()

    def reload(self) -> None:
        """Re-read manifests and record what they declare in the state file."""
        self._services, self._health_checks = load_manifests(self._config_path)
        state = self._state

        for key, doc in self._services.items():
            entry = state["endpoints"].setdefault(key, {"writtenAnnotations": {}})
            entry["declared"] = doc
            self._drop_stale_overrides(key, entry, doc)

        for key, doc in self._health_checks.items():
            spec = doc.get("spec") or {}
            digest = _spec_digest(spec)
            entry = state["health_checks"].get(key)
            if entry is None:
                entry = {
                    "generation": 0,
                    "uid": _lifetime_token(),
                    "status": {"id": "", "observedGeneration": 0},
                }
                state["health_checks"][key] = entry
            entry["origin"] = ORIGIN_MANIFEST
            entry["resourceVersion"] = str((doc.get("metadata") or {}).get("resourceVersion") or "")
            if entry.get("specDigest") != digest:
                entry["spec"] = spec
                entry["specDigest"] = digest
                entry["generation"] = int(entry.get("generation", 0)) + 1
                logger.debug(f"HealthCheck {key} now at generation {entry['generation']}")

        self._save()
        logger.info(
            f"Loaded {len(self._services)} Service(s) and {len(self._health_checks)} HealthCheck(s) "
            f"from {self._config_path}"
        )

    def _save(self) -> None:
        self._state_store.save(self._state)

    def _drop_stale_overrides(self, key: str, entry: Dict[str, Any], doc: Dict[str, Any]) -> None:
        """Forget written-back annotations whose manifest value has changed since."""
        written = entry.get("writtenAnnotations") or {}
        baseline = entry.setdefault("declaredAnnotations", {})
        declared = _manifest_annotations(doc)
        for annotation in list(written):
            if declared.get(annotation) == baseline.get(annotation):
                continue
            del written[annotation]
            baseline.pop(annotation, None)
            logger.info(f"Manifest now declares {annotation} for {key}, dropping the written-back value")

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def list_endpoints(self) -> List[Endpoint]:
        endpoints = []
        for key in sorted(set(self._services) | set(self._state["endpoints"])):
            namespace, name = key.split("/", 1)
            endpoint = self.get_endpoint(namespace, name)
            if endpoint is not None:
                endpoints.append(endpoint)
        return endpoints

    def get_endpoint(self, namespace: str, name: str) -> Optional[Endpoint]:
        key = _qualified(namespace, name)
        entry = self._state["endpoints"].get(key, {})
        doc = self._services.get(key)
        deleting = doc is None
        if deleting:
            doc = entry.get("declared")
            if doc is None:
                return None

        endpoint = endpoint_from_manifest(doc, deleting=deleting)
        written = entry.get("writtenAnnotations") or {}
        if not written:
            return endpoint
        annotations = dict(endpoint.annotations)
        for annotation, value in written.items():
            if value is None:
                annotations.pop(annotation, None)
            else:
                annotations[annotation] = value
        return replace(endpoint, annotations=annotations)

    def update_endpoint(self, endpoint: Endpoint) -> None:
        key = _qualified(endpoint.namespace, endpoint.name)
        entry = self._state["endpoints"].setdefault(key, {"writtenAnnotations": {}})
        written = entry.setdefault("writtenAnnotations", {})
        baseline = entry.setdefault("declaredAnnotations", {})
        declared = _manifest_annotations(entry.get("declared") or {})
        for annotation in WRITABLE_ANNOTATIONS:
            written[annotation] = endpoint.annotations.get(annotation)
            baseline[annotation] = declared.get(annotation)
        self._save()

    def finalize_endpoint(self, endpoint: Endpoint) -> None:
        self._state["endpoints"].pop(_qualified(endpoint.namespace, endpoint.name), None)
        self._save()

    # -------------------------------------------------------------------------
    # Health checks
    # -------------------------------------------------------------------------

    def list_health_checks(self) -> List[HealthCheck]:
        health_checks = []
        for key in sorted(set(self._health_checks) | set(self._state["health_checks"])):
            namespace, name = key.split("/", 1)
            hc = self.get_health_check(namespace, name)
            if hc is not None:
                health_checks.append(hc)
        return health_checks

    def get_health_check(self, namespace: str, name: str) -> Optional[HealthCheck]:
        key = _qualified(namespace, name)
        entry = self._state["health_checks"].get(key)
        if entry is None:
            return None

        deleting = entry.get("origin") == ORIGIN_MANIFEST and key not in self._health_checks
        generation = int(entry.get("generation", 1))
        status = entry.get("status") or {}
        result = status.get("result")
        return HealthCheck(
            namespace=namespace,
            name=name,
            spec=health_check_spec_from_dict(entry.get("spec") or {}),
            status=HealthCheckStatus(
                id=str(status.get("id") or ""),
                result=HealthCheckResult(result) if result else None,
                observed_generation=int(status.get("observedGeneration", 0)),
            ),
            resource_version=_resource_version(entry, generation),
            generation=generation,
            deleting=deleting,
        )

    def create_health_check(self, hc: HealthCheck) -> None:
        key = _qualified(hc.namespace, hc.name)
        spec = health_check_spec_to_dict(hc.spec)
        self._state["health_checks"][key] = {
            "origin": ORIGIN_CONTROLLER,
            "spec": spec,
            "specDigest": _spec_digest(spec),
            "generation": 1,
            "uid": _lifetime_token(),
            "resourceVersion": "",
            "status": {"id": "", "observedGeneration": 0},
        }
        self._save()

    def update_health_check(self, hc: HealthCheck) -> None:
        key = _qualified(hc.namespace, hc.name)
        entry = self._state["health_checks"].get(key)
        if entry is None:
            self.create_health_check(hc)
            return
        spec = health_check_spec_to_dict(hc.spec)
        digest = _spec_digest(spec)
        if entry.get("specDigest") != digest:
            entry["spec"] = spec
            entry["specDigest"] = digest
            entry["generation"] = int(entry.get("generation", 0)) + 1
            self._save()

    def update_health_check_status(self, hc: HealthCheck) -> None:
        entry = self._state["health_checks"].get(_qualified(hc.namespace, hc.name))
        if entry is None:
            return
        entry["status"] = {
            "id": hc.status.id,
            "observedGeneration": hc.status.observed_generation,
        }
        if hc.status.result is not None:
            entry["status"]["result"] = hc.status.result.value
        self._save()

    def finalize_health_check(self, hc: HealthCheck) -> None:
        self._state["health_checks"].pop(_qualified(hc.namespace, hc.name), None)
        self._save()
