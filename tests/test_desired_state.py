import copy

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from lampstack.desired_state import DesiredState
from lampstack.exceptions import ValidationError


def problems_of(config):
    with pytest.raises(ValidationError) as info:
        DesiredState.from_config(config)
    return info.value.problems


def test_example_config_is_consistent(config):
    state = DesiredState.from_config(config)

    assert str(state.networks["main"].cidr) == "10.0.0.0/16"
    assert str(state.subnets["public"].cidr) == "10.0.1.0/24"
    assert state.instances["wordpress"].volume_size == 20
    assert state.bootstrap_for("wordpress").name == "lamp"
    assert [s.name for s in state.bootstrap["lamp"].steps][:2] == [
        "update-packages",
        "install-packages",
    ]


def test_empty_config_gives_empty_state():
    state = DesiredState.from_config({})
    assert state.is_empty


def test_subnet_with_undeclared_network(small_config):
    small_config["subnets"]["public"]["network"] = "missing"
    problems = problems_of(small_config)
    assert any("undeclared network 'missing'" in p for p in problems)


def test_instance_with_undeclared_subnet_and_firewall(small_config):
    small_config["instances"]["site"]["subnet"] = "nowhere"
    small_config["instances"]["site"]["firewalls"] = ["web", "ghost"]
    problems = problems_of(small_config)
    assert any("undeclared subnet 'nowhere'" in p for p in problems)
    assert any("undeclared firewall 'ghost'" in p for p in problems)


def test_instance_with_undeclared_bootstrap_plan(small_config):
    small_config["instances"]["site"]["bootstrap"] = "nope"
    assert any("undeclared bootstrap plan 'nope'" in p for p in problems_of(small_config))


def test_subnet_outside_network(small_config):
    small_config["subnets"]["public"]["cidr"] = "192.168.1.0/24"
    assert any("outside network" in p for p in problems_of(small_config))


def test_overlapping_subnets(small_config):
    small_config["subnets"]["other"] = {"network": "main", "cidr": "10.0.1.128/25"}
    assert any("overlaps subnet 'public'" in p for p in problems_of(small_config))


def test_cidr_with_host_bits_rejected(small_config):
    small_config["networks"]["main"]["cidr"] = "10.0.0.1/16"
    assert any("invalid CIDR" in p for p in problems_of(small_config))


def test_operator_source_needs_operator_cidr(small_config):
    del small_config["operator_cidr"]
    assert any("needs 'operator_cidr'" in p for p in problems_of(small_config))


def test_firewall_in_other_network(small_config):
    small_config["networks"]["other"] = {"cidr": "172.16.0.0/16"}
    small_config["firewalls"]["web"]["network"] = "other"
    assert any("is in network 'other'" in p for p in problems_of(small_config))


@pytest.mark.parametrize(
    "rule, fragment",
    [
        ({"port": 0, "sources": ["0.0.0.0/0"]}, "outside 1-65535"),
        ({"port": "90-80", "sources": ["0.0.0.0/0"]}, "outside 1-65535"),
        ({"port": 80, "protocol": "icmp", "sources": ["0.0.0.0/0"]}, "protocol"),
        ({"port": 80, "sources": []}, "non-empty list"),
        ({"port": 80, "sources": ["not-a-cidr"]}, "invalid CIDR"),
    ],
)
def test_invalid_ingress_rules(small_config, rule, fragment):
    small_config["firewalls"]["web"]["ingress"] = [rule]
    assert any(fragment in p for p in problems_of(small_config))


def test_invalid_volume(small_config):
    small_config["instances"]["site"]["root_volume"] = {"size": 0, "type": "magnetic"}
    problems = problems_of(small_config)
    assert any("size must be a positive integer" in p for p in problems)
    assert any("type must be one of" in p for p in problems)


def test_all_problems_reported_together(small_config):
    small_config["subnets"]["public"]["network"] = "missing"
    small_config["instances"]["site"]["image"] = ""
    small_config["instances"]["site"]["bootstrap"] = "nope"
    error_problems = problems_of(small_config)
    assert len(error_problems) >= 3


def test_invalid_resource_name(small_config):
    small_config["networks"]["bad name"] = {"cidr": "10.1.0.0/16"}
    assert any("invalid name 'bad name'" in p for p in problems_of(small_config))


def test_source_config_is_not_mutated(small_config):
    small_config["networks"]["bad name"] = {"cidr": "10.1.0.0/16"}
    problems_of(small_config)
    assert "bad name" in small_config["networks"]


class TestFirewall:
    @pytest.fixture
    def web(self, small_config):
        return DesiredState.from_config(small_config).firewalls["web"]

    def test_ssh_only_from_operator(self, web):
        assert web.allows(22, "198.51.100.7")
        assert not web.allows(22, "198.51.100.8")
        assert not web.allows(22, "8.8.8.8")

    def test_http_and_https_from_anywhere(self, web):
        assert web.allows(80, "8.8.8.8")
        assert web.allows(443, "203.0.113.99")

    def test_unlisted_port_rejected(self, web):
        assert not web.allows(3306, "198.51.100.7")

    def test_protocol_must_match(self, web):
        assert not web.allows(80, "8.8.8.8", protocol="udp")

    def test_malformed_address_is_not_admitted(self, web):
        assert not web.allows(80, "not-an-address")
        assert not web.allows(22, "198.51.100.300")

    def test_port_range(self, small_config):
        small_config["firewalls"]["web"]["ingress"].append(
            {"port": "8000-8010", "sources": ["10.0.0.0/8"]}
        )
        web = DesiredState.from_config(small_config).firewalls["web"]
        assert web.allows(8005, "10.3.3.3")
        assert not web.allows(8011, "10.3.3.3")


names = st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=12)


@settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(section=st.sampled_from(["subnet", "firewall", "instance-subnet", "instance-firewall"]),
       name=names)
def test_any_dangling_reference_is_rejected(small_config, section, name):
    """A reference to an undeclared resource never survives parsing."""
    small_config = copy.deepcopy(small_config)
    declared = {"main", "public", "web", "lamp"}
    if name in declared:
        name = name + "x"

    if section == "subnet":
        small_config["subnets"]["public"]["network"] = name
    elif section == "firewall":
        small_config["firewalls"]["web"]["network"] = name
    elif section == "instance-subnet":
        small_config["instances"]["site"]["subnet"] = name
    else:
        small_config["instances"]["site"]["firewalls"] = [name]

    with pytest.raises(ValidationError):
        DesiredState.from_config(small_config)
