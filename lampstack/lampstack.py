import json
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from .cloud_init import render_user_data
from .config_manager import ConfigurationManager
from .constants import CLICK_STYLE, DEFAULT_WORKSPACE, EXIT_CODES, STATE_FAILED
from .declarator import ChangeSet, ObservedOutputs, ResourceDeclarator
from .desired_state import DesiredState
from .exceptions import (
    BootstrapStepError,
    ConfigurationError,
    LampstackError,
    ReadinessTimeoutError,
    ReconciliationError,
    StateLockError,
    ValidationError,
)
from .logs import init_logging
from .runner import BootstrapRunner, RunnerStatus
from .steps import BootstrapPlan
from .types import CliOptions


class Lampstack:
    """
    Main Lampstack application class that coordinates all operations.

    This class acts as a facade over the declarator and the bootstrap
    runner, and turns their errors into exit statuses.
    """

    def __init__(self, **kwargs):
        self.options: CliOptions = kwargs
        self.verbose = kwargs.get("verbose", False)
        self.quiet = kwargs.get("quiet", False)
        self.workspace = Path(kwargs.get("workspace") or DEFAULT_WORKSPACE)

        self.config_manager = ConfigurationManager(self.options)
        self.declarator = ResourceDeclarator(
            self.workspace, verbose=self.verbose and not self.quiet
        )

    def _load_state(self) -> DesiredState:
        config = self.config_manager.load_config()
        return DesiredState.from_config(config)

    def _say(self, message: str, style: str = "info") -> None:
        if not self.quiet:
            click.secho(message, **CLICK_STYLE[style])

    def _handle_error(self, error: Exception, operation: str) -> None:
        """Print the error and exit with the code for its failure class."""
        if isinstance(error, ValidationError):
            code = EXIT_CODES["validation"]
        elif isinstance(error, ReconciliationError):
            code = EXIT_CODES["reconciliation"]
        elif isinstance(error, ReadinessTimeoutError):
            code = EXIT_CODES["readiness_timeout"]
        elif isinstance(error, BootstrapStepError):
            code = EXIT_CODES["bootstrap_step"]
        elif isinstance(error, StateLockError):
            code = EXIT_CODES["state_lock"]
        else:
            code = EXIT_CODES["error"]

        click.secho(f"Error during {operation}: {error}", err=True, **CLICK_STYLE["error"])
        stderr = getattr(error, "stderr", None)
        if stderr and self.verbose:
            click.echo(stderr, err=True)
        sys.exit(code)

    def _print_outputs(self, outputs: ObservedOutputs) -> None:
        if not outputs.instances:
            click.secho("No outputs. Nothing is deployed.", **CLICK_STYLE["info"])
            return
        for name, instance in outputs.instances.items():
            click.secho(f"{name}:", **CLICK_STYLE["success"])
            click.echo(f"  instance_id: {instance.instance_id}")
            click.echo(f"  public_ip:   {instance.public_ip}")
            click.echo(f"  url:         {instance.url}")
            click.echo(f"  ssh:         {instance.ssh_command}")

    def _print_change_set(self, change_set: ChangeSet, confirming: bool = False) -> None:
        # A pending confirmation always shows what is being confirmed
        if self.quiet and not confirming:
            return
        for change in change_set.changes:
            click.echo(f"  {change.action:8} {change.address}")
        style = "info" if change_set.is_empty else "success"
        click.secho(change_set.summary(), **CLICK_STYLE[style])

    def validate(self) -> None:
        """Validate the configuration without calling Terraform."""
        try:
            state = self._load_state()
            self.declarator.render(state)
        except (ConfigurationError, ValidationError) as e:
            self._handle_error(e, "validate")

        self._say("Configuration is valid.", "success")

    def plan(self, destroy: bool = False) -> Optional[ChangeSet]:
        """Show what apply (or destroy) would change."""
        try:
            state = self._load_state()
            change_set = self.declarator.plan(state, destroy=destroy)
        except LampstackError as e:
            self._handle_error(e, "plan")
            return None

        self._print_change_set(change_set)
        return change_set

    def apply(self, auto_approve: bool = False) -> Optional[ObservedOutputs]:
        """Plan and converge infrastructure to the desired state."""
        try:
            state = self._load_state()
            change_set = self.declarator.plan(state)
            self._print_change_set(change_set, confirming=not auto_approve)

            if change_set.is_empty:
                outputs = self.declarator.outputs()
            else:
                if not auto_approve:
                    click.confirm("Apply these changes?", abort=True)
                outputs = self.declarator.apply(change_set)
        except LampstackError as e:
            self._handle_error(e, "apply")
            return None

        if not self.quiet:
            self._print_outputs(outputs)
        return outputs

    def destroy(self, auto_approve: bool = False) -> None:
        """Tear down every declared resource by applying the confirmed destroy plan."""
        try:
            state = self._load_state()
            change_set = self.declarator.plan(state, destroy=True)
            self._print_change_set(change_set, confirming=not auto_approve)
            if change_set.is_empty:
                return
            if not auto_approve:
                click.confirm("Destroy these resources?", abort=True)
            self.declarator.apply(change_set)
        except LampstackError as e:
            self._handle_error(e, "destroy")
            return

        self._say(f"Destroyed {len(change_set.changes)} resource(s).", "success")

    def show_outputs(self, as_json: bool = False) -> None:
        try:
            outputs = self.declarator.outputs()
        except LampstackError as e:
            self._handle_error(e, "output")
            return

        if as_json:
            click.echo(json.dumps(outputs.to_dict(), indent=2))
        else:
            self._print_outputs(outputs)

    def _select_plan(self, state: DesiredState, name: Optional[str]) -> BootstrapPlan:
        if name:
            if name in state.bootstrap:
                return state.bootstrap[name]
            if name in state.instances and state.bootstrap_for(name):
                return state.bootstrap_for(name)
            raise ConfigurationError(f"No bootstrap plan or instance named '{name}'")
        if len(state.bootstrap) == 1:
            return next(iter(state.bootstrap.values()))
        if not state.bootstrap:
            raise ConfigurationError("No bootstrap plans defined in config")
        raise ConfigurationError(
            f"Several bootstrap plans defined ({', '.join(state.bootstrap)}); name one"
        )

    def user_data(self, name: Optional[str] = None) -> None:
        """Print the cloud-init payload for a plan or instance."""
        try:
            plan = self._select_plan(self._load_state(), name)
            click.echo(render_user_data(plan), nl=False)
        except LampstackError as e:
            self._handle_error(e, "user-data")

    def boot(self, name: Optional[str] = None) -> Optional[RunnerStatus]:
        """Run a bootstrap plan on this host."""
        try:
            plan = self._select_plan(self._load_state(), name)
            logger = init_logging(
                Path(plan.log), name="lampstack.boot", verbose=self.verbose, quiet=self.quiet
            )
        except (LampstackError, OSError) as e:
            self._handle_error(e, "boot")
            return None

        runner = BootstrapRunner(plan, logger=logger)

        def stop(signum, frame):
            logger.warning("Received signal %d; stopping after the current step", signum)
            runner.request_stop()

        previous = {sig: signal.signal(sig, stop) for sig in (signal.SIGTERM, signal.SIGINT)}
        try:
            return runner.run()
        except (LampstackError, OSError) as e:
            self._handle_error(e, "boot")
            return None
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def boot_status(self, name: Optional[str] = None) -> None:
        """Print the runner status file as JSON."""
        try:
            plan = self._select_plan(self._load_state(), name)
            status = RunnerStatus.load(Path(plan.status))
        except LampstackError as e:
            self._handle_error(e, "boot-status")
            return

        click.echo(json.dumps(status.to_dict(), indent=2))
        if status.state == STATE_FAILED:
            sys.exit(EXIT_CODES["bootstrap_step"])

    def dump_config(self) -> None:
        """Dump the loaded configuration to stdout."""
        try:
            self.config_manager.dump_config(self.config_manager.load_config())
        except ConfigurationError as e:
            self._handle_error(e, "dump config")

    def lampstack_init(self) -> None:
        """Create an example configuration file."""
        try:
            self.config_manager.create_example_config()
        except ConfigurationError as e:
            self._handle_error(e, "init")
