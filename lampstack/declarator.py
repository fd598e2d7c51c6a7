"""
Resource declaration: drive Terraform from a DesiredState.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import click

from .cloud_init import render_user_data
from .constants import (
    CLICK_STYLE,
    STATE_LOCK_FILE,
    TERRAFORM_CONFIG_FILE,
    TERRAFORM_PLAN_FILE,
)
from .desired_state import DesiredState
from .exceptions import ReconciliationError, TerraformCommandError
from .renderer import TerraformRenderer, UserDataFactory
from .state_lock import WorkspaceLock
from .terraform_cli import TerraformCLI
from .types import LampstackConfig, ResourceAddress


class ResourceChange:
    def __init__(self, address: ResourceAddress, resource_type: str, actions: List[str]):
        self.address = address
        self.resource_type = resource_type
        self.actions = list(actions)

    def __repr__(self) -> str:
        return f"ResourceChange({self.address!r}, {self.actions!r})"

    @property
    def action(self) -> str:
        """Collapse Terraform's action list into one verb."""
        if self.actions in (["delete", "create"], ["create", "delete"]):
            return "replace"
        return self.actions[0] if self.actions else "no-op"


class ChangeSet:
    """Saved plan plus the per-resource diff it will apply."""

    def __init__(self, plan_file: Path, changes: List[ResourceChange], destroy: bool = False):
        self.plan_file = Path(plan_file)
        self.changes = changes
        self.destroy = destroy

    @classmethod
    def from_plan_json(cls, plan_file: Path, data: Dict[str, Any], destroy: bool = False):
        changes = []
        for entry in data.get("resource_changes", []):
            actions = entry.get("change", {}).get("actions", [])
            if actions == ["no-op"] or actions == ["read"]:
                continue
            changes.append(ResourceChange(entry["address"], entry.get("type", ""), actions))
        return cls(plan_file, changes, destroy=destroy)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def count(self, action: str) -> int:
        return sum(1 for change in self.changes if change.action == action)

    def summary(self) -> str:
        if self.is_empty:
            return "No changes. Infrastructure matches the desired state."
        return (
            f"Plan: {self.count('create')} to add, {self.count('update')} to change, "
            f"{self.count('replace')} to replace, {self.count('delete')} to destroy."
        )


class InstanceOutputs:
    def __init__(self, name: str, instance_id: str, public_ip: str, url: str, ssh_command: str):
        self.name = name
        self.instance_id = instance_id
        self.public_ip = public_ip
        self.url = url
        self.ssh_command = ssh_command

    def to_dict(self) -> Dict[str, str]:
        return {
            "instance_id": self.instance_id,
            "public_ip": self.public_ip,
            "url": self.url,
            "ssh_command": self.ssh_command,
        }


class ObservedOutputs:
    """Provider-assigned values read back after reconciliation."""

    def __init__(self, instances: Optional[Dict[str, InstanceOutputs]] = None):
        self.instances = dict(instances or {})

    @classmethod
    def from_terraform(cls, raw: Dict[str, Any]) -> "ObservedOutputs":
        values = (raw.get("instances") or {}).get("value") or {}
        instances = {}
        for name, data in values.items():
            instances[name] = InstanceOutputs(
                name,
                instance_id=data.get("id", ""),
                public_ip=data.get("public_ip", ""),
                url=data.get("url", ""),
                ssh_command=data.get("ssh_command", ""),
            )
        return cls(instances)

    def _primary(self) -> Optional[InstanceOutputs]:
        return next(iter(self.instances.values()), None)

    @property
    def instance_id(self) -> Optional[str]:
        primary = self._primary()
        return primary.instance_id if primary else None

    @property
    def public_ip(self) -> Optional[str]:
        primary = self._primary()
        return primary.public_ip if primary else None

    @property
    def url(self) -> Optional[str]:
        primary = self._primary()
        return primary.url if primary else None

    @property
    def ssh_command(self) -> Optional[str]:
        primary = self._primary()
        return primary.ssh_command if primary else None

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {name: outputs.to_dict() for name, outputs in self.instances.items()}


class ResourceDeclarator:
    """Submits desired state to Terraform; convergence stays Terraform's job."""

    def __init__(
        self,
        workspace: Path,
        terraform: Optional[TerraformCLI] = None,
        user_data: Optional[UserDataFactory] = render_user_data,
        verbose: bool = False,
    ):
        self.workspace = Path(workspace)
        self.terraform = terraform or TerraformCLI(self.workspace)
        self.user_data = user_data
        self.verbose = verbose
        self.lock = WorkspaceLock(self.workspace / STATE_LOCK_FILE)

    @property
    def config_file(self) -> Path:
        return self.workspace / TERRAFORM_CONFIG_FILE

    @property
    def plan_file(self) -> Path:
        return self.workspace / TERRAFORM_PLAN_FILE

    def _desired_state(self, desired: Union[DesiredState, LampstackConfig]) -> DesiredState:
        if isinstance(desired, DesiredState):
            return desired
        return DesiredState.from_config(desired)

    def render(self, desired: Union[DesiredState, LampstackConfig]) -> Dict[str, Any]:
        """Render Terraform JSON; raises ValidationError before touching anything."""
        state = self._desired_state(desired)
        return TerraformRenderer(state, user_data=self.user_data).render()

    def _write_config(self, document: Dict[str, Any]) -> None:
        self.workspace.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, sort_keys=True)
            f.write("\n")

    def _reconcile_error(self, verb: str, error: TerraformCommandError) -> ReconciliationError:
        return ReconciliationError(
            f"terraform {verb} failed: {error}", command=error.command, stderr=error.stderr
        )

    def plan(self, desired: Union[DesiredState, LampstackConfig], destroy: bool = False) -> ChangeSet:
        """Render, init and plan; return the ChangeSet of the saved plan."""
        document = self.render(desired)

        with self.lock:
            self._write_config(document)
            try:
                self.terraform.init(quiet=not self.verbose)
                self.terraform.plan(str(self.plan_file), destroy=destroy, quiet=not self.verbose)
                plan_data = self.terraform.show_plan(str(self.plan_file))
            except TerraformCommandError as e:
                raise self._reconcile_error("plan", e)

        change_set = ChangeSet.from_plan_json(self.plan_file, plan_data, destroy=destroy)
        if self.verbose:
            for change in change_set.changes:
                click.secho(f"  {change.action:8} {change.address}", **CLICK_STYLE["info"])
        return change_set

    def apply(self, change_set: ChangeSet) -> ObservedOutputs:
        """Apply exactly the saved plan. Failures are surfaced, never retried."""
        if not change_set.plan_file.is_file():
            raise ReconciliationError(
                f"Saved plan {change_set.plan_file} not found; run plan again"
            )

        with self.lock:
            try:
                self.terraform.apply(str(change_set.plan_file), quiet=not self.verbose)
            except TerraformCommandError as e:
                raise self._reconcile_error("apply", e)
            finally:
                # A saved plan is stale once apply has run, successful or not
                change_set.plan_file.unlink(missing_ok=True)

            return self._read_outputs()

    def destroy(self, desired: Union[DesiredState, LampstackConfig]) -> None:
        """Tear down everything Terraform tracks for the desired state."""
        document = self.render(desired)

        with self.lock:
            self._write_config(document)
            try:
                self.terraform.init(quiet=not self.verbose)
                self.terraform.destroy(quiet=not self.verbose)
            except TerraformCommandError as e:
                raise self._reconcile_error("destroy", e)

    def outputs(self) -> ObservedOutputs:
        return self._read_outputs()

    def _read_outputs(self) -> ObservedOutputs:
        try:
            return ObservedOutputs.from_terraform(self.terraform.output())
        except TerraformCommandError as e:
            raise self._reconcile_error("output", e)
