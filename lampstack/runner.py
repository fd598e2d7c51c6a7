"""
Bootstrap runner: execute provisioning steps once per instance lifetime.

State machine persisted in the plan's status file:

    not_started -> running(i) -> completed | failed(i, reason)

Re-running from completed is a no-op. From failed, or from a running
status left behind by a crash, the runner resumes at the failed step when
that step has an idempotence check, and otherwise restarts at step 0.
"""

import json
import logging
import os
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .constants import STATE_COMPLETED, STATE_FAILED, STATE_NOT_STARTED, STATE_RUNNING
from .credentials import CredentialProvider, SecretStore
from .exceptions import BootstrapStepError, ReadinessTimeoutError, RunnerStateError, SecretError
from .readiness import wait_until_ready
from .steps import BootstrapPlan, ProvisioningStep
from .types import Environment

# Upper bound for a single readiness check
READY_CHECK_TIMEOUT = 30.0


class CommandResult:
    def __init__(self, exit_code: Optional[int], output: str = "", timed_out: bool = False):
        self.exit_code = exit_code
        self.output = output
        self.timed_out = timed_out

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class LocalExecutor:
    """Runs shell commands on this host."""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    def run(self, command: str, timeout: float, env: Optional[Environment] = None) -> CommandResult:
        try:
            result = subprocess.run(
                [self.shell, "-c", command],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            output = e.stdout or ""
            if isinstance(output, bytes):
                output = output.decode(errors="replace")
            return CommandResult(None, output, timed_out=True)
        return CommandResult(result.returncode, result.stdout + result.stderr)


class RunnerStatus:
    """Machine-readable record of where the runner stopped."""

    def __init__(
        self,
        state: str = STATE_NOT_STARTED,
        step_index: Optional[int] = None,
        step: Optional[str] = None,
        reason: Optional[str] = None,
        exit_code: Optional[int] = None,
        updated_at: Optional[str] = None,
    ):
        self.state = state
        self.step_index = step_index
        self.step = step
        self.reason = reason
        self.exit_code = exit_code
        self.updated_at = updated_at

    @classmethod
    def load(cls, path: Path) -> "RunnerStatus":
        path = Path(path)
        if not path.is_file():
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RunnerStateError(f"Cannot read status file {path}: {e}")
        if not isinstance(data, dict):
            raise RunnerStateError(f"Status file {path} does not hold a JSON object")
        return cls(
            state=data.get("state", STATE_NOT_STARTED),
            step_index=data.get("step_index"),
            step=data.get("step"),
            reason=data.get("reason"),
            exit_code=data.get("exit_code"),
            updated_at=data.get("updated_at"),
        )

    def save(self, path: Path) -> None:
        path = Path(path)
        self.updated_at = datetime.now(timezone.utc).isoformat()
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            raise RunnerStateError(f"Cannot write status file {path}: {e}")

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "step_index": self.step_index,
            "step": self.step,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "updated_at": self.updated_at,
        }


class BootstrapRunner:
    """Runs a BootstrapPlan strictly in order, one step at a time."""

    def __init__(
        self,
        plan: BootstrapPlan,
        executor=None,
        credentials: Optional[CredentialProvider] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plan = plan
        self.executor = executor or LocalExecutor()
        self.credentials = credentials or CredentialProvider(SecretStore(Path(plan.secrets_file)))
        self.logger = logger or logging.getLogger("lampstack.boot")
        self.sleep = sleep
        self.clock = clock
        self._stop_requested = False

    @property
    def status_path(self) -> Path:
        return Path(self.plan.status)

    @property
    def marker_path(self) -> Path:
        return Path(self.plan.marker)

    def status(self) -> RunnerStatus:
        return RunnerStatus.load(self.status_path)

    def request_stop(self) -> None:
        """Ask the runner to stop at the next step boundary."""
        self._stop_requested = True

    def _resume_index(self, status: RunnerStatus) -> int:
        if status.state not in (STATE_FAILED, STATE_RUNNING) or status.step_index is None:
            return 0
        index = status.step_index
        if not 0 <= index < len(self.plan.steps):
            return 0
        step = self.plan.steps[index]
        if step.name != status.step or not step.resumable:
            self.logger.info("Previous run stopped at step %d; restarting from step 0", index)
            return 0
        self.logger.info("Resuming at step %d (%s)", index, step.name)
        return index

    def _record(self, state: str, index: Optional[int] = None, step: Optional[str] = None,
                reason: Optional[str] = None, exit_code: Optional[int] = None) -> RunnerStatus:
        status = RunnerStatus(state, index, step, reason, exit_code)
        status.save(self.status_path)
        return status

    def _fail(self, index: int, step: ProvisioningStep, reason: str,
              exit_code: Optional[int] = None) -> BootstrapStepError:
        self._record(STATE_FAILED, index, step.name, reason, exit_code)
        self.logger.error("Step %d (%s) failed: %s", index, step.name, reason)
        return BootstrapStepError(index, step.name, reason, exit_code)

    def run(self) -> RunnerStatus:
        """Run the plan to completion, or raise and leave a failed status."""
        status = self.status()
        if status.state == STATE_COMPLETED:
            self.logger.info("Bootstrap '%s' already completed; nothing to do", self.plan.name)
            return status

        start = self._resume_index(status)
        try:
            with self.credentials.scoped(self.plan) as secrets:
                env = dict(os.environ)
                env.update(secrets)
                for index in range(start, len(self.plan.steps)):
                    step = self.plan.steps[index]
                    if self._stop_requested:
                        raise self._fail(index, step, "cancelled")
                    self._record(STATE_RUNNING, index, step.name)
                    try:
                        self._run_step(index, step, env)
                    except OSError as e:
                        raise self._fail(index, step, f"cannot execute: {e}")
        except SecretError as e:
            self._record(STATE_FAILED, start, "secrets", str(e))
            self.logger.error("Cannot resolve secrets: %s", e)
            raise

        try:
            self.marker_path.parent.mkdir(parents=True, exist_ok=True)
            self.marker_path.write_text(datetime.now(timezone.utc).isoformat() + "\n")
        except OSError as e:
            raise RunnerStateError(f"Cannot write completion marker {self.marker_path}: {e}")
        self.logger.info("Bootstrap '%s' completed", self.plan.name)
        return self._record(STATE_COMPLETED)

    def _passes(self, command: str, env: Environment, timeout: float) -> bool:
        return self.executor.run(command, timeout=timeout, env=env).ok

    def _wait_ready(self, index: int, step: ProvisioningStep, env: Environment) -> None:
        gate = step.ready

        def on_retry(attempt: int, wait: float) -> None:
            self.logger.info(
                "Step %d (%s): not ready after attempt %d, retrying in %.1fs",
                index, step.name, attempt, wait,
            )

        try:
            wait_until_ready(
                lambda budget: self._passes(gate.command, env, min(budget, READY_CHECK_TIMEOUT)),
                f"step {index} ({step.name})",
                retries=gate.retries,
                delay=gate.delay,
                backoff=gate.backoff,
                max_delay=gate.max_delay,
                timeout=gate.timeout,
                sleep=self.sleep,
                clock=self.clock,
                on_retry=on_retry,
            )
        except ReadinessTimeoutError as e:
            e.step_index = index
            self._record(STATE_FAILED, index, step.name, str(e))
            self.logger.error("%s", e)
            raise

    def _run_step(self, index: int, step: ProvisioningStep, env: Environment) -> None:
        self.logger.info("Step %d/%d: %s", index + 1, len(self.plan.steps), step.name)

        if step.ready:
            self._wait_ready(index, step, env)

        if step.check and self._passes(step.check, env, step.timeout):
            self.logger.info("Step %d (%s) already done, skipping", index, step.name)
            return

        self.logger.debug("+ %s", step.run)
        result = self.executor.run(step.run, timeout=step.timeout, env=env)
        if result.output:
            self.logger.debug(result.output.rstrip())

        if result.timed_out:
            raise self._fail(index, step, f"timed out after {step.timeout}s")
        if result.exit_code != 0:
            raise self._fail(index, step, f"exited with {result.exit_code}", result.exit_code)
        if step.check and not self._passes(step.check, env, step.timeout):
            raise self._fail(index, step, "check still failing after run")
