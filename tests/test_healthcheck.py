"""Unit tests for the Health Check Provisioner."""

from dataclasses import replace
from typing import Any

import pytest

from external_route53.healthcheck import (
    HealthCheckProvisioner,
    build_create_config,
    build_health_check_resource,
    caller_reference,
    check_type,
    validate_spec,
)
from external_route53.models import (
    ConfigurationError,
    Endpoint,
    HealthCheck,
    HealthCheckProtocol,
    HealthCheckSpec,
    HealthCheckStatus,
    LoadBalancerIngress,
    ProviderError,
    ServicePort,
    ServiceType,
)

from fakes import FakeRoute53Client, client_error

# =============================================================================
# Helpers
# =============================================================================


def make_spec(**overrides: Any) -> HealthCheckSpec:
    fields = dict(protocol=HealthCheckProtocol.TCP, port=443, address="10.0.0.5", failure_threshold=3)
    fields.update(overrides)
    return HealthCheckSpec(**fields)


def make_hc(**overrides: Any) -> HealthCheck:
    fields = dict(namespace="shop", name="web", spec=make_spec(), resource_version="7")
    fields.update(overrides)
    return HealthCheck(**fields)


# =============================================================================
# Configuration Building
# =============================================================================


def test_caller_reference_uses_identity_and_revision() -> None:
    """Test caller reference uses identity and revision."""
    assert caller_reference(make_hc()) == "shop/web/7"


def test_tcp_create_config() -> None:
    """Test TCP create config."""
    config = build_create_config(make_spec(fast_interval=True))

    assert config == {
        "Type": "TCP",
        "Port": 443,
        "IPAddress": "10.0.0.5",
        "FailureThreshold": 3,
        "Inverted": False,
        "Disabled": False,
        "RequestInterval": 10,
    }


def test_http_create_config_sets_path_and_sni() -> None:
    """Test HTTP create config sets path and SNI."""
    spec = make_spec(
        protocol=HealthCheckProtocol.HTTPS,
        address="",
        hostname="app.example.net",
        path="/healthz",
        measure_latency=True,
        enabled=False,
        invert=True,
    )

    config = build_create_config(spec)

    assert config["Type"] == "HTTPS"
    assert config["FullyQualifiedDomainName"] == "app.example.net"
    assert "IPAddress" not in config
    assert config["ResourcePath"] == "/healthz"
    assert config["EnableSNI"] is True
    assert config["RequestInterval"] == 30
    assert config["MeasureLatency"] is True
    assert config["Disabled"] is True
    assert config["Inverted"] is True


def test_search_string_selects_string_match_type() -> None:
    """Test search string selects string match type."""
    spec = make_spec(protocol=HealthCheckProtocol.HTTP, search_string="ok")

    assert check_type(spec) == "HTTP_STR_MATCH"
    assert build_create_config(spec)["SearchString"] == "ok"
    assert build_create_config(spec)["ResourcePath"] == "/"


@pytest.mark.parametrize(
    "overrides",
    [
        {"port": 0},
        {"port": 70000},
        {"address": "", "hostname": ""},
        {"hostname": "app.example.net"},
        {"failure_threshold": 0},
        {"failure_threshold": 11},
        {"search_string": "ok"},
    ],
)
def test_invalid_specs_are_rejected(overrides: dict) -> None:
    """Test invalid specs are rejected."""
    with pytest.raises(ConfigurationError):
        validate_spec(make_spec(**overrides))


# =============================================================================
# Provisioner
# =============================================================================


class TestEnsure:
    """Tests for HealthCheckProvisioner.ensure."""

    def test_creates_tags_and_returns_id(self) -> None:
        """Test creates tags and returns id."""
        client = FakeRoute53Client()

        result = HealthCheckProvisioner(client).ensure(make_hc())

        assert result.status.id == "hc-0001"
        assert client.create_calls[0]["CallerReference"] == "shop/web/7"
        assert client.tag_calls == [
            {
                "ResourceType": "healthcheck",
                "ResourceId": "hc-0001",
                "AddTags": [{"Key": "Name", "Value": "shop/web"}],
            }
        ]

    def test_second_ensure_updates_instead_of_creating(self) -> None:
        """A check created earlier is found by caller reference even without a stored id."""
        client = FakeRoute53Client()
        provisioner = HealthCheckProvisioner(client)

        first = provisioner.ensure(make_hc())
        second = provisioner.ensure(make_hc())

        assert len(client.create_calls) == 1
        assert len(client.health_checks) == 1
        assert second.status.id == first.status.id
        assert client.update_calls[0]["HealthCheckId"] == first.status.id

    def test_update_sends_only_mutable_fields(self) -> None:
        """Test update sends only mutable fields."""
        client = FakeRoute53Client()
        provisioner = HealthCheckProvisioner(client)
        created = provisioner.ensure(make_hc())

        provisioner.ensure(replace(created, spec=replace(created.spec, port=8443, fast_interval=True)))

        update = client.update_calls[0]
        assert update["Port"] == 8443
        assert "RequestInterval" not in update
        assert "Type" not in update
        assert "MeasureLatency" not in update

    def test_stored_id_is_updated_when_reference_is_unknown(self) -> None:
        """Test stored id is updated when reference is unknown."""
        client = FakeRoute53Client(
            health_checks=[
                {
                    "Id": "hc-legacy",
                    "CallerReference": "shop/web/1",
                    "HealthCheckConfig": {"Type": "TCP", "Port": 80},
                    "HealthCheckVersion": 1,
                }
            ]
        )

        result = HealthCheckProvisioner(client).ensure(make_hc(status=HealthCheckStatus(id="hc-legacy")))

        assert result.status.id == "hc-legacy"
        assert client.create_calls == []
        assert client.health_checks["hc-legacy"]["HealthCheckConfig"]["Port"] == 443

    def test_vanished_check_is_recreated(self) -> None:
        """Test vanished check is recreated."""
        client = FakeRoute53Client()

        result = HealthCheckProvisioner(client).ensure(make_hc(status=HealthCheckStatus(id="hc-gone")))

        assert client.update_calls[0]["HealthCheckId"] == "hc-gone"
        assert len(client.create_calls) == 1
        assert result.status.id == "hc-0001"

    def test_tag_failure_is_reported(self) -> None:
        """Test tag failure is reported."""
        client = FakeRoute53Client()
        client.failures["change_tags_for_resource"] = client_error("ThrottlingException")

        with pytest.raises(ProviderError, match="tagging"):
            HealthCheckProvisioner(client).ensure(make_hc())

    def test_create_failure_is_provider_error(self) -> None:
        """Test create failure is provider error."""
        client = FakeRoute53Client()
        client.failures["create_health_check"] = client_error("TooManyHealthChecks")

        with pytest.raises(ProviderError):
            HealthCheckProvisioner(client).ensure(make_hc())

    def test_invalid_spec_makes_no_calls(self) -> None:
        """Test invalid spec makes no calls."""
        client = FakeRoute53Client()

        with pytest.raises(ConfigurationError):
            HealthCheckProvisioner(client).ensure(make_hc(spec=make_spec(port=0)))

        assert client.create_calls == []
        assert client.update_calls == []


class TestDelete:
    """Tests for HealthCheckProvisioner.delete."""

    def test_deletes_and_clears_id(self) -> None:
        """Test deletes and clears id."""
        client = FakeRoute53Client()
        provisioner = HealthCheckProvisioner(client)
        created = provisioner.ensure(make_hc())

        result = provisioner.delete(created)

        assert result.status.id == ""
        assert client.health_checks == {}

    def test_missing_check_is_not_an_error(self) -> None:
        """Test missing check is not an error."""
        client = FakeRoute53Client()

        result = HealthCheckProvisioner(client).delete(make_hc(status=HealthCheckStatus(id="hc-gone")))

        assert client.delete_calls == ["hc-gone"]
        assert result.status.id == ""

    def test_without_id_nothing_is_called(self) -> None:
        """Test without id nothing is called."""
        client = FakeRoute53Client()

        HealthCheckProvisioner(client).delete(make_hc())

        assert client.delete_calls == []

    def test_other_failures_propagate(self) -> None:
        """Test other failures propagate."""
        client = FakeRoute53Client()
        client.failures["delete_health_check"] = client_error("HealthCheckInUse")

        with pytest.raises(ProviderError):
            HealthCheckProvisioner(client).delete(make_hc(status=HealthCheckStatus(id="hc-0001")))


# =============================================================================
# Resource Derivation
# =============================================================================


def make_endpoint(**overrides: Any) -> Endpoint:
    fields = dict(
        namespace="shop",
        name="web",
        uid="uid-1",
        type=ServiceType.LOAD_BALANCER,
        ingress=[LoadBalancerIngress(ip="10.0.0.5")],
        ports=[ServicePort(port=443, node_port=30443)],
    )
    fields.update(overrides)
    return Endpoint(**fields)


def test_load_balancer_gets_tcp_check_on_first_port() -> None:
    """Test load balancer gets TCP check on first port."""
    hc = build_health_check_resource(make_endpoint())

    assert hc is not None
    assert hc.namespace == "shop"
    assert hc.name == "web"
    assert hc.spec.protocol == HealthCheckProtocol.TCP
    assert hc.spec.port == 443
    assert hc.spec.address == "10.0.0.5"
    assert hc.spec.failure_threshold == 3
    assert hc.spec.fast_interval is True
    assert hc.spec.enabled is True


def test_node_port_service_uses_node_port() -> None:
    """Test node port service uses node port."""
    hc = build_health_check_resource(make_endpoint(type=ServiceType.NODE_PORT))
    assert hc is not None
    assert hc.spec.port == 30443


def test_hostname_ingress_is_used_when_no_ip() -> None:
    """Test hostname ingress is used when no IP."""
    hc = build_health_check_resource(make_endpoint(ingress=[LoadBalancerIngress(hostname="lb.example.com")]))
    assert hc is not None
    assert hc.spec.hostname == "lb.example.com"
    assert hc.spec.address == ""


def test_external_name_gets_no_check() -> None:
    """Test external name gets no check."""
    assert build_health_check_resource(make_endpoint(type=ServiceType.EXTERNAL_NAME)) is None


@pytest.mark.parametrize("overrides", [{"ports": []}, {"ingress": []}])
def test_missing_ports_or_ingress_fail(overrides: dict) -> None:
    """Test missing ports or ingress fail."""
    with pytest.raises(ConfigurationError):
        build_health_check_resource(make_endpoint(**overrides))
