import json
import os
import subprocess
from pathlib import Path
from typing import Dict, Optional

import click

from .constants import CLICK_STYLE
from .exceptions import TerraformCommandError
from .types import CommandList


class CommandBuilder:
    """Helper class to build Terraform commands."""

    @staticmethod
    def build_plan_command(
        plan_file: str,
        destroy: bool = False,
        lock_timeout: str = "0s",
    ) -> CommandList:
        """Build a plan command that saves its result to plan_file."""
        command = ["plan", "-input=false", "-lock=true", f"-lock-timeout={lock_timeout}"]

        if destroy:
            command.append("-destroy")

        command.extend(["-detailed-exitcode", f"-out={plan_file}"])
        return command

    @staticmethod
    def build_apply_command(plan_file: str, lock_timeout: str = "0s") -> CommandList:
        """Build an apply command for a previously saved plan."""
        return [
            "apply",
            "-input=false",
            "-lock=true",
            f"-lock-timeout={lock_timeout}",
            "-auto-approve",
            plan_file,
        ]

    @staticmethod
    def build_destroy_command(lock_timeout: str = "0s") -> CommandList:
        return [
            "destroy",
            "-input=false",
            "-lock=true",
            f"-lock-timeout={lock_timeout}",
            "-auto-approve",
        ]


class TerraformCLI:
    """
    Python wrapper for the Terraform CLI, bound to one working directory.
    """

    # `plan -detailed-exitcode` exits 2 when the plan has changes
    PLAN_HAS_CHANGES = 2

    def __init__(
        self,
        workdir: Path,
        terraform_cmd: str = "terraform",
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ):
        self.workdir = Path(workdir)
        self.terraform_cmd = terraform_cmd
        self.env = env
        self.timeout = timeout

    def _run_command(
        self,
        command: CommandList,
        *,
        quiet: bool = True,
        ok_codes: tuple = (0,),
    ) -> subprocess.CompletedProcess:
        """Execute a Terraform CLI command, raising on unexpected exit codes."""
        full_command = [self.terraform_cmd] + command

        if not quiet:
            click.secho(f"-> {' '.join(full_command)}", **CLICK_STYLE["info"])

        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "1"
        if self.env:
            env.update(self.env)

        try:
            result = subprocess.run(
                full_command,
                cwd=self.workdir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise TerraformCommandError(
                f"'{self.terraform_cmd}' not found on PATH",
                command=" ".join(full_command),
            )
        except subprocess.TimeoutExpired:
            raise TerraformCommandError(
                f"Timed out after {self.timeout}s",
                command=" ".join(full_command),
            )

        if result.returncode not in ok_codes:
            stderr = result.stderr.strip()
            raise TerraformCommandError(
                f"Failed: {stderr}" if stderr else f"Exited with {result.returncode}",
                command=" ".join(full_command),
                stderr=result.stderr,
            )
        return result

    def init(self, quiet: bool = True) -> None:
        self._run_command(["init", "-input=false", "-no-color"], quiet=quiet)

    def validate(self, quiet: bool = True) -> None:
        self._run_command(["validate", "-no-color"], quiet=quiet)

    def plan(self, plan_file: str, destroy: bool = False, quiet: bool = True) -> bool:
        """Save a plan to plan_file; return whether it contains changes."""
        command = CommandBuilder.build_plan_command(plan_file, destroy=destroy)
        command.append("-no-color")
        result = self._run_command(command, quiet=quiet, ok_codes=(0, self.PLAN_HAS_CHANGES))
        return result.returncode == self.PLAN_HAS_CHANGES

    def show_plan(self, plan_file: str) -> Dict:
        """Return the JSON representation of a saved plan."""
        result = self._run_command(["show", "-json", plan_file])
        return self._parse_json(result, default=None)

    def apply(self, plan_file: str, quiet: bool = True) -> str:
        command = CommandBuilder.build_apply_command(plan_file)
        command.insert(-1, "-no-color")
        return self._run_command(command, quiet=quiet).stdout

    def destroy(self, quiet: bool = True) -> str:
        command = CommandBuilder.build_destroy_command()
        command.append("-no-color")
        return self._run_command(command, quiet=quiet).stdout

    def output(self) -> Dict:
        """Return all root module outputs as {name: {"value": ..., ...}}."""
        result = self._run_command(["output", "-json"])
        return self._parse_json(result, default="{}")

    @staticmethod
    def _parse_json(result: subprocess.CompletedProcess, default: Optional[str]) -> Dict:
        text = result.stdout or default
        try:
            return json.loads(text)
        except (TypeError, ValueError) as e:
            raise TerraformCommandError(
                f"Unreadable JSON from terraform: {e}",
                command=" ".join(str(arg) for arg in result.args),
                stderr=result.stderr,
            )
