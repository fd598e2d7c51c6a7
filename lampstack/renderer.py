"""
Render a DesiredState into Terraform JSON configuration.
"""

from typing import Any, Callable, Dict, List, Optional

from .constants import ANY_IPV4, AWS_PROVIDER_SOURCE, AWS_PROVIDER_VERSION
from .desired_state import DesiredState, Instance
from .steps import BootstrapPlan

UserDataFactory = Callable[[BootstrapPlan], str]


def escape_template(text: str) -> str:
    """Escape Terraform template sequences so text is taken literally."""
    return text.replace("${", "$${").replace("%{", "%%{")


def ref(resource_type: str, name: str, attribute: str = "id") -> str:
    return "${" + f"{resource_type}.{name}.{attribute}" + "}"


class TerraformRenderer:
    """Builds the main.tf.json document for a desired state.

    Every edge between dependent resources is written out as an explicit
    depends_on, on top of the implicit references Terraform infers.
    """

    def __init__(self, state: DesiredState, user_data: Optional[UserDataFactory] = None):
        self.state = state
        self.user_data = user_data

    def _tags(self, name: str) -> Dict[str, str]:
        tags = dict(self.state.tags)
        tags["Name"] = name
        tags["ManagedBy"] = "lampstack"
        return tags

    def render(self) -> Dict[str, Any]:
        resources: Dict[str, Dict[str, Any]] = {}

        def add(resource_type: str, name: str, body: Dict[str, Any]) -> None:
            resources.setdefault(resource_type, {})[name] = body

        public_networks = {s.network for s in self.state.subnets.values() if s.public}

        for network in self.state.networks.values():
            add(
                "aws_vpc",
                network.name,
                {
                    "cidr_block": str(network.cidr),
                    "enable_dns_support": True,
                    "enable_dns_hostnames": True,
                    "tags": self._tags(network.name),
                },
            )
            if network.name in public_networks:
                self._render_gateway(add, network.name)

        for subnet in self.state.subnets.values():
            body = {
                "vpc_id": ref("aws_vpc", subnet.network),
                "cidr_block": str(subnet.cidr),
                "map_public_ip_on_launch": subnet.public,
                "tags": self._tags(subnet.name),
                "depends_on": [f"aws_vpc.{subnet.network}"],
            }
            if subnet.availability_zone:
                body["availability_zone"] = subnet.availability_zone
            add("aws_subnet", subnet.name, body)
            if subnet.public:
                add(
                    "aws_route_table_association",
                    subnet.name,
                    {
                        "subnet_id": ref("aws_subnet", subnet.name),
                        "route_table_id": ref("aws_route_table", subnet.network),
                        "depends_on": [
                            f"aws_subnet.{subnet.name}",
                            f"aws_route_table.{subnet.network}",
                        ],
                    },
                )

        for firewall in self.state.firewalls.values():
            self._render_firewall(add, firewall)

        for instance in self.state.instances.values():
            add("aws_instance", instance.name, self._render_instance(instance))

        document: Dict[str, Any] = {
            "terraform": {
                "required_providers": {
                    "aws": {"source": AWS_PROVIDER_SOURCE, "version": AWS_PROVIDER_VERSION}
                }
            },
            "provider": {"aws": {"region": self.state.region}},
            "output": {"instances": {"value": self._render_outputs()}},
        }
        if resources:
            document["resource"] = resources
        return document

    def _render_gateway(self, add, network: str) -> None:
        add(
            "aws_internet_gateway",
            network,
            {
                "vpc_id": ref("aws_vpc", network),
                "tags": self._tags(network),
                "depends_on": [f"aws_vpc.{network}"],
            },
        )
        add(
            "aws_route_table",
            network,
            {
                "vpc_id": ref("aws_vpc", network),
                "tags": self._tags(network),
                "depends_on": [f"aws_vpc.{network}"],
            },
        )
        add(
            "aws_route",
            f"{network}_internet",
            {
                "route_table_id": ref("aws_route_table", network),
                "destination_cidr_block": ANY_IPV4,
                "gateway_id": ref("aws_internet_gateway", network),
                "depends_on": [
                    f"aws_route_table.{network}",
                    f"aws_internet_gateway.{network}",
                ],
            },
        )

    def _render_firewall(self, add, firewall) -> None:
        add(
            "aws_security_group",
            firewall.name,
            {
                "name": firewall.name,
                "description": f"Managed by lampstack: {firewall.name}",
                "vpc_id": ref("aws_vpc", firewall.network),
                "tags": self._tags(firewall.name),
                "depends_on": [f"aws_vpc.{firewall.network}"],
            },
        )
        for index, rule in enumerate(firewall.ingress):
            for source_index, source in enumerate(rule.sources):
                body = {
                    "security_group_id": ref("aws_security_group", firewall.name),
                    "from_port": rule.from_port,
                    "to_port": rule.to_port,
                    "ip_protocol": rule.protocol,
                    "depends_on": [f"aws_security_group.{firewall.name}"],
                }
                if source.version == 4:
                    body["cidr_ipv4"] = str(source)
                else:
                    body["cidr_ipv6"] = str(source)
                if rule.description:
                    body["description"] = rule.description
                add(
                    "aws_vpc_security_group_ingress_rule",
                    f"{firewall.name}_{index}_{source_index}",
                    body,
                )
        add(
            "aws_vpc_security_group_egress_rule",
            f"{firewall.name}_all",
            {
                "security_group_id": ref("aws_security_group", firewall.name),
                "ip_protocol": "-1",
                "cidr_ipv4": ANY_IPV4,
                "depends_on": [f"aws_security_group.{firewall.name}"],
            },
        )

    def _firewall_rule_addresses(self, firewall_name: str) -> List[str]:
        firewall = self.state.firewalls[firewall_name]
        addresses = [f"aws_security_group.{firewall_name}"]
        for index, rule in enumerate(firewall.ingress):
            for source_index in range(len(rule.sources)):
                addresses.append(
                    f"aws_vpc_security_group_ingress_rule.{firewall_name}_{index}_{source_index}"
                )
        addresses.append(f"aws_vpc_security_group_egress_rule.{firewall_name}_all")
        return addresses

    def _render_instance(self, instance: Instance) -> Dict[str, Any]:
        subnet = self.state.subnets[instance.subnet]
        depends_on = [f"aws_subnet.{subnet.name}"]
        for firewall_name in instance.firewalls:
            depends_on.extend(self._firewall_rule_addresses(firewall_name))
        if subnet.public:
            depends_on.extend(
                [
                    f"aws_route.{subnet.network}_internet",
                    f"aws_route_table_association.{subnet.name}",
                ]
            )

        body: Dict[str, Any] = {
            "ami": instance.image,
            "instance_type": instance.instance_type,
            "subnet_id": ref("aws_subnet", subnet.name),
            "vpc_security_group_ids": [
                ref("aws_security_group", name) for name in instance.firewalls
            ],
            "associate_public_ip_address": subnet.public,
            "root_block_device": [
                {
                    "volume_size": instance.volume_size,
                    "volume_type": instance.volume_type,
                    "delete_on_termination": True,
                }
            ],
            "tags": self._tags(instance.name),
            "depends_on": depends_on,
        }
        if instance.key_name:
            body["key_name"] = instance.key_name

        plan = self.state.bootstrap_for(instance.name)
        if plan is not None and self.user_data is not None:
            body["user_data"] = escape_template(self.user_data(plan))
            body["user_data_replace_on_change"] = True
        return body

    def _render_outputs(self) -> Dict[str, Dict[str, str]]:
        outputs = {}
        for instance in self.state.instances.values():
            address = ref("aws_instance", instance.name, "public_ip")
            key = f"-i {instance.key_name}.pem " if instance.key_name else ""
            outputs[instance.name] = {
                "id": ref("aws_instance", instance.name),
                "public_ip": address,
                "url": f"http://{address}",
                "ssh_command": f"ssh {key}{instance.ssh_user}@{address}",
            }
        return outputs
