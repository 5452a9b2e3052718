"""Route 53 record synchronization.

Three pieces cooperate here:

    AliasZoneResolver    ELB hostname -> canonical hosted zone id
    OwnershipValidator   checks the TXT ownership marker for a name
    RecordSynchronizer   UPSERT/DELETE of the record and its marker

Every component receives its boto3 client through the constructor so tests
can pass in fakes.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .annotations import validate_record_intent
from .models import (
    ConfigurationError,
    OwnershipConflictError,
    ProviderError,
    RecordIntent,
    ResolutionError,
)

logger = logging.getLogger(__name__)

MARKER_VALUE = '"set by external-route53"'
MARKER_TTL = 300
CHANGE_COMMENT = "change from external-route53"

# =============================================================================
# Provider Error Helpers
# =============================================================================


def error_code(error: Exception) -> str:
    """Return the AWS error code of a ClientError, or "" for anything else."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Message", ""))
    return str(error)


def _record_not_found(error: Exception) -> bool:
    # Route 53 rejects a DELETE of a missing record set with InvalidChangeBatch
    # and a message of the form "Tried to delete resource record set ... but it
    # was not found".
    return "but it was not found" in error_message(error)


# =============================================================================
# Name Helpers
# =============================================================================


def domain_equal(a: str, b: str) -> bool:
    """Compare DNS names, ignoring case and a trailing root dot."""
    return a.rstrip(".").lower() == b.rstrip(".").lower()


# =============================================================================
# Alias Zone Resolver
# =============================================================================

ELB_HOSTNAME_RE = re.compile(r"\.elb\.[A-Za-z0-9\-]+\.amazonaws\.com\.?$")


def is_elb_hostname(hostname: str) -> bool:
    return bool(hostname) and bool(ELB_HOSTNAME_RE.search(hostname))


def load_balancer_name(hostname: str) -> str:
    """Recover a load balancer's name from its DNS name.

    "xxx-yyy-0123456789-abcdefghijklmn.elb.ap-northeast-1.amazonaws.com"
    becomes "xxx-yyy-0123456789".
    """
    label = hostname.split(".", 1)[0]
    parts = label.split("-")
    return "-".join(parts[:-1])


class AliasZoneResolver:
    """Looks up the canonical hosted zone of an ELB from its hostname."""

    def __init__(self, elbv2_client: Any):
        self._client = elbv2_client

    def resolve(self, hostname: str) -> Optional[str]:
        """Return the ELB's canonical hosted zone id.

        Returns None for hostnames that are not ELB DNS names.

        Raises:
            ResolutionError: If no load balancer matches.
            ProviderError: If the ELB API call fails for another reason.
        """
        if not is_elb_hostname(hostname):
            return None

        name = load_balancer_name(hostname)
        if not name:
            raise ResolutionError(f"cannot derive a load balancer name from {hostname!r}")

        try:
            response = self._client.describe_load_balancers(Names=[name])
        except ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                raise ResolutionError(f'ELB "{hostname}" not found') from e
            raise ProviderError(f"describe_load_balancers({name}) failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"describe_load_balancers({name}) failed: {e}") from e

        load_balancers = response.get("LoadBalancers") or []
        if not load_balancers:
            raise ResolutionError(f'ELB "{hostname}" not found')

        zone_id = load_balancers[0].get("CanonicalHostedZoneId", "")
        if not zone_id:
            raise ResolutionError(f'ELB "{hostname}" has no canonical hosted zone id')
        logger.debug(f"Resolved {hostname} to load balancer {name} in zone {zone_id}")
        return zone_id


# =============================================================================
# Ownership Validator
# =============================================================================


class OwnershipValidator:
    """Checks the TXT marker that proves this controller manages a name.

    A name may be written when any of these holds:
      1. nothing exists at all from the marker name onwards, or
      2. a TXT record exists at ``<prefix><hostname>`` whose set identifier is
         the intent's, or
      3. no record exists under the primary hostname.
    """

    def __init__(self, route53_client: Any):
        self._client = route53_client

    def list_from_marker(self, intent: RecordIntent) -> List[Dict[str, Any]]:
        try:
            response = self._client.list_resource_record_sets(
                HostedZoneId=intent.hosted_zone_id,
                StartRecordName=intent.marker_name,
            )
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(
                f"list_resource_record_sets({intent.hosted_zone_id}, {intent.marker_name}) failed: {e}"
            ) from e
        return response.get("ResourceRecordSets") or []

    def is_owner(self, intent: RecordIntent) -> bool:
        record_sets = self.list_from_marker(intent)
        if not record_sets:
            return True

        occupied = False
        marked = False
        for record_set in record_sets:
            name = record_set.get("Name", "")
            if domain_equal(intent.hostname, name):
                occupied = True
            if (
                domain_equal(intent.marker_name, name)
                and record_set.get("Type") == "TXT"
                and record_set.get("SetIdentifier") == intent.set_identifier
            ):
                marked = True
        return marked or not occupied


# =============================================================================
# Record Synchronizer
# =============================================================================


def build_changes(action: str, intent: RecordIntent) -> List[Dict[str, Any]]:
    """Build the primary record and marker changes for one change batch."""
    primary: Dict[str, Any] = {
        "Name": intent.hostname,
        "Type": intent.record_type,
        "SetIdentifier": intent.set_identifier,
        "Weight": intent.weight,
    }
    if intent.is_alias:
        primary["AliasTarget"] = {
            "HostedZoneId": intent.alias_target_zone_id or intent.hosted_zone_id,
            "DNSName": intent.target_hostname,
            "EvaluateTargetHealth": True,
        }
    else:
        primary["TTL"] = intent.ttl
        primary["ResourceRecords"] = [{"Value": intent.target_ip_address}]

    marker: Dict[str, Any] = {
        "Name": intent.marker_name,
        "Type": "TXT",
        "SetIdentifier": intent.set_identifier,
        "Weight": intent.weight,
        "TTL": MARKER_TTL,
        "ResourceRecords": [{"Value": MARKER_VALUE}],
    }

    if intent.health_check_id:
        primary["HealthCheckId"] = intent.health_check_id
        marker["HealthCheckId"] = intent.health_check_id

    return [
        {"Action": action, "ResourceRecordSet": primary},
        {"Action": action, "ResourceRecordSet": marker},
    ]


class RecordSynchronizer:
    """Applies Record Intents to Route 53."""

    def __init__(self, route53_client: Any, validator: Optional[OwnershipValidator] = None):
        self._client = route53_client
        self.validator = validator or OwnershipValidator(route53_client)

    def upsert(self, intent: RecordIntent) -> None:
        """Create or update the record and its marker."""
        self._validate(intent)
        try:
            self._submit("UPSERT", intent)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"UPSERT {intent.hostname} failed: {e}") from e
        logger.info(
            f"Upserted {intent.record_type} {intent.hostname} "
            f"[{intent.set_identifier}] -> {intent.target_hostname or intent.target_ip_address}"
        )

    def delete(self, intent: RecordIntent) -> None:
        """Delete the record and its marker. Missing records are not an error."""
        self._validate(intent)
        try:
            self._submit("DELETE", intent)
        except ClientError as e:
            if _record_not_found(e):
                logger.info(f"Record {intent.hostname} [{intent.set_identifier}] already deleted")
                return
            raise ProviderError(f"DELETE {intent.hostname} failed: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"DELETE {intent.hostname} failed: {e}") from e
        logger.info(f"Deleted {intent.record_type} {intent.hostname} [{intent.set_identifier}]")

    def _validate(self, intent: RecordIntent) -> None:
        validate_record_intent(intent)
        if intent.is_alias and is_elb_hostname(intent.target_hostname) and not intent.alias_target_zone_id:
            raise ConfigurationError(
                f"alias target {intent.target_hostname} is a load balancer but its hosted zone is unresolved"
            )
        if not self.validator.is_owner(intent):
            raise OwnershipConflictError(
                f"{intent.hostname} has no valid TXT record at {intent.marker_name} "
                f"for {intent.set_identifier}; it may be co-managed by another system"
            )

    def _submit(self, action: str, intent: RecordIntent) -> None:
        changes = build_changes(action, intent)
        logger.debug(f"Submitting change batch to {intent.hosted_zone_id}: {changes}")
        self._client.change_resource_record_sets(
            HostedZoneId=intent.hosted_zone_id,
            ChangeBatch={"Comment": CHANGE_COMMENT, "Changes": changes},
        )
