#!/usr/bin/env python3
"""external-route53 - Route 53 records and health checks from Service annotations

Keeps Route 53 weighted A / alias records and Route 53 health checks in sync
with the annotations on LoadBalancer and ExternalName Services and with
HealthCheck resources. Every record written is paired with a TXT ownership
marker so records managed by other systems are never overwritten.

Recognized Service annotations:

    external-dns.alpha.kubernetes.io/hostname              Record name (required)
    external-dns.alpha.kubernetes.io/ttl                   TTL in seconds (default: 10, min: 10)
    external-dns.alpha.kubernetes.io/alias                 "true"/"false" (default: inferred)
    external-dns.alpha.kubernetes.io/aws-weight            Weight 0-255 (default: 1)
    external-dns.alpha.kubernetes.io/set-identifier        Set identifier (default: namespace/name/uid)
    external-dns.alpha.kubernetes.io/aws-health-check-id   Health check id (written back)
    external-route53.io/record-type                        Record type, only "A" (default: A)
    external-route53.io/health-check                       "true" to provision a health check
    external-route53.io/hosted-zone-id                     Hosted zone (default: HOSTED_ZONE_ID)

Environment variables:

    Route 53:
        HOSTED_ZONE_ID                Default hosted zone for records
        TXT_PREFIX                    Ownership marker prefix (default: extr53-)
        AWS_REGION                    Region used to look up load balancers (default: ap-northeast-1)
                                      Credentials come from the standard AWS credential chain.

    Resources:
        MANIFEST_PATH                 YAML manifest file or directory of *.yaml files with
                                      Service and HealthCheck documents
                                      (default: /config/manifests)
        STATE_PATH                    JSON state file path (default: /data/state.json)

    Runtime:
        SYNC_MODE                     "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS         Resync interval in watch mode (default: 60)
        REQUEUE_SECONDS               Delay before a failed reconcile is retried, above 0 (default: 60)
        HEALTH_CHECK_POLL_SECONDS     First wait for a new health check id (default: 10)
        HEALTH_CHECK_MAX_ATTEMPTS     Polls before giving up on a health check id (default: 6)
        UNLINK_DELETED_HEALTH_CHECKS  Clear the health check id annotation of Services whose
                                      health check was deleted (default: false)
        LOG_LEVEL                     DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Any

import boto3

from .controller import Controller, WorkQueue
from .healthcheck import HealthCheckProvisioner
from .manifests import (
    ManifestStore,
    StateStore,
    find_config_files,
    get_config_files_mtimes,
)
from .route53 import AliasZoneResolver, RecordSynchronizer

# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        CONFIG_ERRORS.append(f"{name} must be an integer, got {raw!r}")
        return default


CONFIG_ERRORS: list[str] = []

# Route 53
HOSTED_ZONE_ID = os.getenv("HOSTED_ZONE_ID", "").strip()
TXT_PREFIX = os.getenv("TXT_PREFIX", "extr53-")
AWS_REGION = os.getenv("AWS_REGION", "ap-northeast-1").strip()

# Resources
MANIFEST_PATH = os.getenv("MANIFEST_PATH", "/config/manifests")
STATE_PATH = os.getenv("STATE_PATH", "/data/state.json")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = _parse_int("POLL_INTERVAL_SECONDS", 60)
REQUEUE_SECONDS = _parse_int("REQUEUE_SECONDS", 60)
HEALTH_CHECK_POLL_SECONDS = _parse_int("HEALTH_CHECK_POLL_SECONDS", 10)
HEALTH_CHECK_MAX_ATTEMPTS = _parse_int("HEALTH_CHECK_MAX_ATTEMPTS", 6)
UNLINK_DELETED_HEALTH_CHECKS = _parse_bool(os.getenv("UNLINK_DELETED_HEALTH_CHECKS"), default=False)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# botocore logs every request at DEBUG
logging.getLogger("botocore").setLevel(max(logging.INFO, logging.getLogger().level))

# =============================================================================
# Wiring
# =============================================================================


def create_controller(route53_client: Any, elbv2_client: Any, store: ManifestStore) -> Controller:
    """Build a Controller from already-constructed clients and store."""
    return Controller(
        store=store,
        synchronizer=RecordSynchronizer(route53_client),
        resolver=AliasZoneResolver(elbv2_client),
        provisioner=HealthCheckProvisioner(route53_client),
        queue=WorkQueue(),
        default_hosted_zone_id=HOSTED_ZONE_ID,
        txt_prefix=TXT_PREFIX,
        requeue_seconds=REQUEUE_SECONDS,
        health_check_poll_seconds=HEALTH_CHECK_POLL_SECONDS,
        health_check_max_attempts=HEALTH_CHECK_MAX_ATTEMPTS,
        unlink_deleted_health_checks=UNLINK_DELETED_HEALTH_CHECKS,
    )


def sync_once(controller: Controller, store: ManifestStore) -> int:
    """Reload manifests, queue everything and process what is due."""
    store.reload()
    controller.enqueue_all()
    processed = controller.run_pending()
    pending = len(controller.queue)
    if pending:
        logger.info(f"Processed {processed} object(s), {pending} waiting for retry")
    else:
        logger.info(f"Processed {processed} object(s)")
    return processed


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = list(CONFIG_ERRORS)

    if SYNC_MODE not in {"once", "watch"}:
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if not TXT_PREFIX:
        errors.append("TXT_PREFIX must not be empty")
    if REQUEUE_SECONDS <= 0:
        errors.append("REQUEUE_SECONDS must be greater than 0")
    if HEALTH_CHECK_MAX_ATTEMPTS < 1:
        errors.append("HEALTH_CHECK_MAX_ATTEMPTS must be at least 1")
    if not find_config_files(MANIFEST_PATH):
        logger.warning(f"No manifests found at {MANIFEST_PATH} yet")
    if not HOSTED_ZONE_ID:
        logger.warning(
            "HOSTED_ZONE_ID not set. Every Service must carry the external-route53.io/hosted-zone-id annotation."
        )

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"external-route53: {MANIFEST_PATH} -> Route 53")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    route53_client = boto3.client("route53")
    elbv2_client = boto3.client("elbv2", region_name=AWS_REGION)

    store = ManifestStore(MANIFEST_PATH, StateStore(STATE_PATH))
    controller = create_controller(route53_client, elbv2_client, store)

    logger.info(f"Default hosted zone: {HOSTED_ZONE_ID or '(none)'}")
    logger.info(f"Ownership marker prefix: {TXT_PREFIX}")
    logger.info(f"Sync mode: {SYNC_MODE}")
    if SYNC_MODE == "watch":
        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s, retry delay: {REQUEUE_SECONDS}s")

    try:
        if SYNC_MODE == "once":
            sync_once(controller, store)
            return

        manifest_files = find_config_files(MANIFEST_PATH)
        last_mtimes = get_config_files_mtimes(manifest_files)
        sync_once(controller, store)
        last_resync = time.monotonic()
        interval = max(5, POLL_INTERVAL_SECONDS)

        while True:
            current_files = find_config_files(MANIFEST_PATH)
            current_mtimes = get_config_files_mtimes(current_files)

            if set(current_files) != set(manifest_files) or current_mtimes != last_mtimes:
                changed = sorted(
                    set(current_files) ^ set(manifest_files)
                    | {f for f in current_files if current_mtimes.get(f) != last_mtimes.get(f)}
                )
                logger.info(f"Manifest change detected in: {', '.join(Path(f).name for f in changed)}")
                manifest_files = current_files
                last_mtimes = current_mtimes
                sync_once(controller, store)
                last_resync = time.monotonic()
            elif time.monotonic() - last_resync >= interval:
                sync_once(controller, store)
                last_resync = time.monotonic()
            else:
                controller.run_pending()

            wait = interval - (time.monotonic() - last_resync)
            next_retry = controller.queue.seconds_until_next()
            if next_retry is not None:
                wait = min(wait, next_retry)
            time.sleep(min(max(1.0, wait), 5.0))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
