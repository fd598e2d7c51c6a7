from lampstack.desired_state import DesiredState
from lampstack.renderer import TerraformRenderer, escape_template


def render(config, user_data=None):
    return TerraformRenderer(DesiredState.from_config(config), user_data=user_data).render()


def test_example_scenario_resources(small_config):
    document = render(small_config)
    resources = document["resource"]

    assert resources["aws_vpc"]["main"]["cidr_block"] == "10.0.0.0/16"
    assert resources["aws_subnet"]["public"]["cidr_block"] == "10.0.1.0/24"
    assert resources["aws_subnet"]["public"]["vpc_id"] == "${aws_vpc.main.id}"
    assert "main" in resources["aws_internet_gateway"]
    assert resources["aws_route"]["main_internet"]["destination_cidr_block"] == "0.0.0.0/0"
    assert "public" in resources["aws_route_table_association"]
    assert list(resources["aws_instance"]) == ["site"]
    assert document["provider"]["aws"]["region"] == "eu-west-1"


def test_ingress_rules_resolve_operator_source(small_config):
    rules = render(small_config)["resource"]["aws_vpc_security_group_ingress_rule"]
    by_port = {body["from_port"]: body for body in rules.values()}

    assert by_port[22]["cidr_ipv4"] == "198.51.100.7/32"
    assert by_port[80]["cidr_ipv4"] == "0.0.0.0/0"
    assert by_port[443]["cidr_ipv4"] == "0.0.0.0/0"
    assert all(body["ip_protocol"] == "tcp" for body in rules.values())


def test_instance_depends_on_firewall_and_network_explicitly(small_config):
    instance = render(small_config)["resource"]["aws_instance"]["site"]

    assert "aws_subnet.public" in instance["depends_on"]
    assert "aws_security_group.web" in instance["depends_on"]
    assert "aws_vpc_security_group_ingress_rule.web_0_0" in instance["depends_on"]
    assert "aws_route.main_internet" in instance["depends_on"]
    assert instance["vpc_security_group_ids"] == ["${aws_security_group.web.id}"]
    assert instance["root_block_device"][0]["volume_type"] == "gp3"
    assert instance["key_name"] == "ops"


def test_every_dependency_names_a_rendered_resource(config):
    resources = render(config, user_data=lambda plan: "#!/bin/bash\n")["resource"]
    addresses = {f"{rtype}.{name}" for rtype, bodies in resources.items() for name in bodies}
    for bodies in resources.values():
        for body in bodies.values():
            assert set(body.get("depends_on", [])) <= addresses


def test_user_data_is_escaped(small_config):
    instance = render(small_config, user_data=lambda plan: 'echo "${DB_PASSWORD}"')["resource"][
        "aws_instance"
    ]["site"]
    assert instance["user_data"] == 'echo "$${DB_PASSWORD}"'
    assert instance["user_data_replace_on_change"] is True


def test_outputs_per_instance(small_config):
    outputs = render(small_config)["output"]["instances"]["value"]["site"]
    assert outputs["id"] == "${aws_instance.site.id}"
    assert outputs["url"] == "http://${aws_instance.site.public_ip}"
    assert outputs["ssh_command"] == "ssh -i ops.pem ubuntu@${aws_instance.site.public_ip}"


def test_private_subnet_has_no_route_to_internet(small_config):
    small_config["subnets"]["public"]["public"] = False
    resources = render(small_config)["resource"]
    assert "aws_internet_gateway" not in resources
    assert "aws_route_table_association" not in resources
    assert resources["aws_instance"]["site"]["associate_public_ip_address"] is False


def test_empty_state_renders_no_resources():
    document = TerraformRenderer(DesiredState.empty()).render()
    assert "resource" not in document
    assert document["output"]["instances"]["value"] == {}


def test_escape_template():
    assert escape_template("${a} %{ if b }") == "$${a} %%{ if b }"
