"""Shared pytest fixtures for lampstack tests."""
import copy
import json
from pathlib import Path

import pytest
import yaml

from lampstack.constants import DEFAULT_CONFIG_TEMPLATE
from lampstack.runner import CommandResult
from lampstack.steps import BootstrapPlan, ProvisioningStep

EXAMPLE_CONFIG = yaml.safe_load(DEFAULT_CONFIG_TEMPLATE)


@pytest.fixture
def config():
    """A fresh copy of the example configuration."""
    return copy.deepcopy(EXAMPLE_CONFIG)


@pytest.fixture
def small_config():
    """One network, one subnet, one firewall, one instance, one short plan."""
    return {
        "region": "eu-west-1",
        "operator_cidr": "198.51.100.7/32",
        "networks": {"main": {"cidr": "10.0.0.0/16"}},
        "subnets": {"public": {"network": "main", "cidr": "10.0.1.0/24"}},
        "firewalls": {
            "web": {
                "network": "main",
                "ingress": [
                    {"port": 22, "sources": ["operator"]},
                    {"port": 80, "sources": ["0.0.0.0/0"]},
                    {"port": 443, "sources": ["0.0.0.0/0"]},
                ],
            }
        },
        "instances": {
            "site": {
                "subnet": "public",
                "firewalls": ["web"],
                "image": "ami-123",
                "instance_type": "t3.micro",
                "key_name": "ops",
                "bootstrap": "lamp",
            }
        },
        "bootstrap": {
            "lamp": {
                "steps": [
                    {"name": "install", "run": "do install", "check": "has install"},
                    {"name": "configure", "run": "do configure ${DB_PASSWORD}"},
                ]
            }
        },
    }


class FakeHost:
    """A pretend machine driven by tiny shell-like commands.

    do <token>    mark token done (exit 0)
    has <token>   exit 0 if token is done
    fail          exit 1
    hang          time out
    """

    def __init__(self):
        self.done = set()
        self.calls = []
        self.envs = []
        self.broken = set()

    def run(self, command, timeout, env=None):
        self.calls.append(command)
        self.envs.append(env)
        verb, _, arg = command.partition(" ")
        if verb == "do":
            if arg in self.broken:
                return CommandResult(3, "boom")
            self.done.add(arg)
            return CommandResult(0, f"did {arg}")
        if verb == "has":
            return CommandResult(0 if arg in self.done else 1)
        if verb == "hang":
            return CommandResult(None, timed_out=True)
        if verb == "noop":
            return CommandResult(0)
        return CommandResult(1, f"unknown command {command}")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def make_plan(tmp_path):
    def factory(steps, secrets=None, name="test"):
        return BootstrapPlan(
            name,
            steps,
            secrets=secrets,
            marker=str(tmp_path / "state" / "complete"),
            status=str(tmp_path / "state" / "status.json"),
            log=str(tmp_path / "log" / "boot.log"),
            secrets_file=str(tmp_path / "secrets" / "secrets.env"),
        )

    return factory


@pytest.fixture
def steps():
    return [
        ProvisioningStep("packages", "do packages", check="has packages"),
        ProvisioningStep("database", "do database", check="has database"),
        ProvisioningStep("site", "do site"),
    ]


class FakeTerraform:
    """Stands in for TerraformCLI; keeps a set of deployed resource addresses."""

    def __init__(self, workdir):
        self.workdir = Path(workdir)
        self.deployed = set()
        self.calls = []
        self.fail_on = {}
        self._pending = None

    def _check(self, verb):
        self.calls.append(verb)
        if verb in self.fail_on:
            from lampstack.exceptions import TerraformCommandError

            raise TerraformCommandError(
                f"Failed: {self.fail_on[verb]}",
                command=f"terraform {verb}",
                stderr=self.fail_on[verb],
            )

    def _declared(self):
        with open(self.workdir / "main.tf.json") as f:
            document = json.load(f)
        return {
            f"{rtype}.{name}"
            for rtype, bodies in document.get("resource", {}).items()
            for name in bodies
        }

    def init(self, quiet=True):
        self._check("init")

    def plan(self, plan_file, destroy=False, quiet=True):
        self._check("plan")
        target = set() if destroy else self._declared()
        create = sorted(target - self.deployed)
        delete = sorted(self.deployed - target)
        self._pending = (plan_file, target)
        Path(plan_file).write_text("plan")
        return bool(create or delete)

    def show_plan(self, plan_file):
        self._check("show")
        _, target = self._pending
        changes = []
        for address in sorted(target | self.deployed):
            if address in target and address not in self.deployed:
                actions = ["create"]
            elif address in self.deployed and address not in target:
                actions = ["delete"]
            else:
                actions = ["no-op"]
            changes.append(
                {"address": address, "type": address.split(".")[0], "change": {"actions": actions}}
            )
        return {"resource_changes": changes}

    def apply(self, plan_file, quiet=True):
        self._check("apply")
        _, target = self._pending
        self.deployed = set(target)
        return "Apply complete!"

    def destroy(self, quiet=True):
        self._check("destroy")
        self.deployed = set()
        return "Destroy complete!"

    def output(self):
        self._check("output")
        instances = {
            address.split(".")[1]: {
                "id": "i-0abc123",
                "public_ip": "54.1.2.3",
                "url": "http://54.1.2.3",
                "ssh_command": "ssh -i ops.pem ubuntu@54.1.2.3",
            }
            for address in self.deployed
            if address.startswith("aws_instance.")
        }
        return {"instances": {"value": instances}} if instances else {}


@pytest.fixture
def workspace(tmp_path):
    return tmp_path / "workspace"


@pytest.fixture
def terraform(workspace):
    return FakeTerraform(workspace)
