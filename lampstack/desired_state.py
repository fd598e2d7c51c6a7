"""
Desired state model: the operator's declared target infrastructure.

Parsing collects every consistency problem it finds and raises a single
ValidationError, so nothing downstream ever sees a dangling reference.
"""

import ipaddress
import re
from typing import Any, Dict, List, Optional, Tuple

from .constants import (
    OPERATOR_SOURCE,
    VALID_PROTOCOLS,
    VALID_VOLUME_TYPES,
)
from .exceptions import ValidationError
from .steps import BootstrapPlan
from .types import (
    Cidr,
    FirewallDefinition,
    InstanceDefinition,
    LampstackConfig,
    NetworkDefinition,
    ResourceName,
    SubnetDefinition,
)

SECTIONS = ("networks", "subnets", "firewalls", "instances", "bootstrap")

# Names double as Terraform resource labels
RESOURCE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


def _parse_cidr(where: str, value: Any, problems: List[str]):
    if not isinstance(value, str):
        problems.append(f"{where}: CIDR must be a string, got {value!r}")
        return None
    try:
        return ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        problems.append(f"{where}: invalid CIDR '{value}' ({e})")
        return None


class Network:
    def __init__(self, name: ResourceName, cidr):
        self.name = name
        self.cidr = cidr


class Subnet:
    def __init__(
        self,
        name: ResourceName,
        network: ResourceName,
        cidr,
        availability_zone: Optional[str] = None,
        public: bool = True,
    ):
        self.name = name
        self.network = network
        self.cidr = cidr
        self.availability_zone = availability_zone
        self.public = public


class IngressRule:
    """Admits traffic on a port range from a set of source networks."""

    def __init__(
        self,
        from_port: int,
        to_port: int,
        protocol: str,
        sources: List[str],
        description: str = "",
    ):
        self.from_port = from_port
        self.to_port = to_port
        self.protocol = protocol
        self.sources = [ipaddress.ip_network(s) for s in sources]
        self.description = description

    def matches(self, port: int, address: str, protocol: str = "tcp") -> bool:
        if protocol != self.protocol or not self.from_port <= port <= self.to_port:
            return False
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip in source for source in self.sources if source.version == ip.version)


class Firewall:
    def __init__(self, name: ResourceName, network: ResourceName, ingress: List[IngressRule]):
        self.name = name
        self.network = network
        self.ingress = ingress

    def allows(self, port: int, address: str, protocol: str = "tcp") -> bool:
        """Whether an inbound connection from address to port is admitted.

        A malformed address is never admitted.
        """
        return any(rule.matches(port, address, protocol) for rule in self.ingress)


class Instance:
    def __init__(
        self,
        name: ResourceName,
        subnet: ResourceName,
        firewalls: List[ResourceName],
        image: str,
        instance_type: str,
        key_name: Optional[str] = None,
        ssh_user: str = "ubuntu",
        volume_size: int = 8,
        volume_type: str = "gp3",
        bootstrap: Optional[str] = None,
    ):
        self.name = name
        self.subnet = subnet
        self.firewalls = firewalls
        self.image = image
        self.instance_type = instance_type
        self.key_name = key_name
        self.ssh_user = ssh_user
        self.volume_size = volume_size
        self.volume_type = volume_type
        self.bootstrap = bootstrap


class DesiredState:
    """Immutable, internally consistent view of a configuration."""

    def __init__(
        self,
        region: str = "us-east-1",
        operator_cidr: Optional[Cidr] = None,
        tags: Optional[Dict[str, str]] = None,
        networks: Optional[Dict[ResourceName, Network]] = None,
        subnets: Optional[Dict[ResourceName, Subnet]] = None,
        firewalls: Optional[Dict[ResourceName, Firewall]] = None,
        instances: Optional[Dict[ResourceName, Instance]] = None,
        bootstrap: Optional[Dict[str, BootstrapPlan]] = None,
    ):
        self.region = region
        self.operator_cidr = operator_cidr
        self.tags = dict(tags or {})
        self.networks = dict(networks or {})
        self.subnets = dict(subnets or {})
        self.firewalls = dict(firewalls or {})
        self.instances = dict(instances or {})
        self.bootstrap = dict(bootstrap or {})

    @classmethod
    def empty(cls, region: str = "us-east-1") -> "DesiredState":
        return cls(region=region)

    @property
    def is_empty(self) -> bool:
        return not (self.networks or self.subnets or self.firewalls or self.instances)

    def bootstrap_for(self, instance_name: ResourceName) -> Optional[BootstrapPlan]:
        plan_name = self.instances[instance_name].bootstrap
        return self.bootstrap.get(plan_name) if plan_name else None

    @classmethod
    def from_config(cls, config: LampstackConfig) -> "DesiredState":
        """Build a DesiredState, raising ValidationError on any inconsistency."""
        problems: List[str] = []
        if not isinstance(config, dict):
            raise ValidationError(["configuration must be a mapping"])

        sections = {}
        for section in SECTIONS:
            value = config.get(section) or {}
            if not isinstance(value, dict):
                problems.append(f"'{section}' must be a mapping of name to definition")
                value = {}
            value = dict(value)
            for name in list(value):
                if not isinstance(name, str) or not RESOURCE_NAME_RE.match(name):
                    problems.append(f"'{section}': invalid name {name!r}")
                    del value[name]
            sections[section] = value

        region = config.get("region", "us-east-1")
        if not isinstance(region, str) or not region:
            problems.append("'region' must be a non-empty string")

        tags = config.get("tags") or {}
        if not isinstance(tags, dict):
            problems.append("'tags' must be a mapping")
            tags = {}

        operator_cidr = config.get("operator_cidr")
        if operator_cidr is not None:
            if _parse_cidr("operator_cidr", operator_cidr, problems) is None:
                operator_cidr = None

        networks = _parse_networks(sections["networks"], problems)
        subnets = _parse_subnets(sections["subnets"], networks, problems)
        firewalls = _parse_firewalls(sections["firewalls"], networks, operator_cidr, problems)

        plans = {}
        for plan_name, plan_data in sections["bootstrap"].items():
            plan = BootstrapPlan.from_definition(plan_name, plan_data, problems)
            if plan is not None:
                plans[plan_name] = plan

        instances = _parse_instances(
            sections["instances"], subnets, firewalls, sections["bootstrap"], problems
        )

        if problems:
            raise ValidationError(problems)

        return cls(
            region=region,
            operator_cidr=operator_cidr,
            tags={str(k): str(v) for k, v in tags.items()},
            networks=networks,
            subnets=subnets,
            firewalls=firewalls,
            instances=instances,
            bootstrap=plans,
        )


def _parse_networks(data: Dict[str, NetworkDefinition], problems: List[str]) -> Dict[str, Network]:
    networks = {}
    for name, definition in data.items():
        where = f"network '{name}'"
        if not isinstance(definition, dict):
            problems.append(f"{where}: definition must be a mapping")
            continue
        cidr = _parse_cidr(where, definition.get("cidr"), problems)
        if cidr is not None:
            networks[name] = Network(name, cidr)
    return networks


def _parse_subnets(
    data: Dict[str, SubnetDefinition], networks: Dict[str, Network], problems: List[str]
) -> Dict[str, Subnet]:
    subnets = {}
    for name, definition in data.items():
        where = f"subnet '{name}'"
        if not isinstance(definition, dict):
            problems.append(f"{where}: definition must be a mapping")
            continue
        network_name = definition.get("network")
        if network_name not in networks:
            problems.append(f"{where}: references undeclared network '{network_name}'")
            continue
        cidr = _parse_cidr(where, definition.get("cidr"), problems)
        if cidr is None:
            continue
        network = networks[network_name]
        if cidr.version != network.cidr.version or not cidr.subnet_of(network.cidr):
            problems.append(f"{where}: {cidr} is outside network '{network_name}' ({network.cidr})")
            continue
        for other in subnets.values():
            if other.network == network_name and other.cidr.overlaps(cidr):
                problems.append(f"{where}: {cidr} overlaps subnet '{other.name}' ({other.cidr})")
        subnets[name] = Subnet(
            name,
            network_name,
            cidr,
            availability_zone=definition.get("availability_zone"),
            public=bool(definition.get("public", True)),
        )
    return subnets


def _parse_port_range(where: str, rule: Dict[str, Any], problems: List[str]) -> Optional[Tuple[int, int]]:
    port = rule.get("port")
    if isinstance(port, str) and "-" in port:
        low, _, high = port.partition("-")
        try:
            from_port, to_port = int(low), int(high)
        except ValueError:
            problems.append(f"{where}: invalid port range '{port}'")
            return None
    elif isinstance(port, int) and not isinstance(port, bool):
        from_port = to_port = port
    else:
        problems.append(f"{where}: 'port' must be a number or a 'low-high' range")
        return None

    if not (1 <= from_port <= to_port <= 65535):
        problems.append(f"{where}: port {port} is outside 1-65535")
        return None
    return from_port, to_port


def _parse_firewalls(
    data: Dict[str, FirewallDefinition],
    networks: Dict[str, Network],
    operator_cidr: Optional[Cidr],
    problems: List[str],
) -> Dict[str, Firewall]:
    firewalls = {}
    for name, definition in data.items():
        where = f"firewall '{name}'"
        if not isinstance(definition, dict):
            problems.append(f"{where}: definition must be a mapping")
            continue
        network_name = definition.get("network")
        if network_name not in networks:
            problems.append(f"{where}: references undeclared network '{network_name}'")
            continue

        rules = []
        ingress = definition.get("ingress") or []
        if not isinstance(ingress, list):
            problems.append(f"{where}: 'ingress' must be a list")
            ingress = []
        for index, raw in enumerate(ingress):
            rule_where = f"{where} rule {index}"
            if not isinstance(raw, dict):
                problems.append(f"{rule_where}: must be a mapping")
                continue
            ports = _parse_port_range(rule_where, raw, problems)
            protocol = raw.get("protocol", "tcp")
            if protocol not in VALID_PROTOCOLS:
                problems.append(f"{rule_where}: protocol must be one of {sorted(VALID_PROTOCOLS)}")
                continue

            sources = raw.get("sources")
            if not isinstance(sources, list) or not sources:
                problems.append(f"{rule_where}: 'sources' must be a non-empty list")
                continue
            resolved = []
            for source in sources:
                if source == OPERATOR_SOURCE:
                    if operator_cidr is None:
                        problems.append(f"{rule_where}: 'operator' source needs 'operator_cidr'")
                        continue
                    source = operator_cidr
                if _parse_cidr(rule_where, source, problems) is not None:
                    resolved.append(source)

            if ports is not None and len(resolved) == len(sources):
                rules.append(
                    IngressRule(
                        ports[0],
                        ports[1],
                        protocol,
                        resolved,
                        description=str(raw.get("description", "")),
                    )
                )
        firewalls[name] = Firewall(name, network_name, rules)
    return firewalls


def _parse_instances(
    data: Dict[str, InstanceDefinition],
    subnets: Dict[str, Subnet],
    firewalls: Dict[str, Firewall],
    bootstrap: Dict[str, Any],
    problems: List[str],
) -> Dict[str, Instance]:
    instances = {}
    for name, definition in data.items():
        where = f"instance '{name}'"
        if not isinstance(definition, dict):
            problems.append(f"{where}: definition must be a mapping")
            continue

        for field in ("image", "instance_type"):
            if not isinstance(definition.get(field), str) or not definition.get(field):
                problems.append(f"{where}: must have an '{field}' field")

        subnet_name = definition.get("subnet")
        subnet = subnets.get(subnet_name)
        if subnet is None:
            problems.append(f"{where}: references undeclared subnet '{subnet_name}'")

        firewall_names = definition.get("firewalls") or []
        if not isinstance(firewall_names, list):
            problems.append(f"{where}: 'firewalls' must be a list")
            firewall_names = []
        for firewall_name in firewall_names:
            firewall = firewalls.get(firewall_name)
            if firewall is None:
                problems.append(f"{where}: references undeclared firewall '{firewall_name}'")
            elif subnet is not None and firewall.network != subnet.network:
                problems.append(
                    f"{where}: firewall '{firewall_name}' is in network '{firewall.network}', "
                    f"subnet '{subnet_name}' is in '{subnet.network}'"
                )

        volume = definition.get("root_volume") or {}
        if not isinstance(volume, dict):
            problems.append(f"{where}: 'root_volume' must be a mapping")
            volume = {}
        size = volume.get("size", 8)
        volume_type = volume.get("type", "gp3")
        if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
            problems.append(f"{where}: root volume size must be a positive integer (GiB)")
        if volume_type not in VALID_VOLUME_TYPES:
            problems.append(
                f"{where}: root volume type must be one of {sorted(VALID_VOLUME_TYPES)}"
            )

        plan_name = definition.get("bootstrap")
        if plan_name is not None and plan_name not in bootstrap:
            problems.append(f"{where}: references undeclared bootstrap plan '{plan_name}'")

        instances[name] = Instance(
            name,
            subnet_name,
            list(firewall_names),
            definition.get("image"),
            definition.get("instance_type"),
            key_name=definition.get("key_name"),
            ssh_user=definition.get("ssh_user", "ubuntu"),
            volume_size=size,
            volume_type=volume_type,
            bootstrap=plan_name,
        )
    return instances
