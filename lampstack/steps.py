"""
Provisioning step definitions for the bootstrap runner.
"""

import re
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_LOG_PATH,
    DEFAULT_MARKER_PATH,
    DEFAULT_SECRETS_PATH,
    DEFAULT_STATUS_PATH,
    DEFAULT_STEP_TIMEOUT,
    READY_BACKOFF,
    READY_DELAY,
    READY_MAX_DELAY,
    READY_RETRIES,
    READY_TIMEOUT,
)
from .types import BootstrapDefinition, StepDefinition

SECRET_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
STEP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
SECRET_SOURCES = ("generate", "env", "file")


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


class ReadinessGate:
    """A bounded wait-and-check barrier run before a step."""

    def __init__(
        self,
        command: str,
        retries: int = READY_RETRIES,
        delay: float = READY_DELAY,
        backoff: float = READY_BACKOFF,
        max_delay: float = READY_MAX_DELAY,
        timeout: float = READY_TIMEOUT,
    ):
        self.command = command
        self.retries = retries
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay
        self.timeout = timeout

    @classmethod
    def from_definition(cls, where: str, data: Any, problems: List[str]) -> Optional["ReadinessGate"]:
        if isinstance(data, str):
            data = {"command": data}
        if not isinstance(data, dict):
            problems.append(f"{where}: 'ready' must be a command or a mapping")
            return None

        command = data.get("command")
        if not command or not isinstance(command, str):
            problems.append(f"{where}: 'ready' needs a 'command'")
            return None

        gate = cls(
            command,
            retries=data.get("retries", READY_RETRIES),
            delay=data.get("delay", READY_DELAY),
            backoff=data.get("backoff", READY_BACKOFF),
            max_delay=data.get("max_delay", READY_MAX_DELAY),
            timeout=data.get("timeout", READY_TIMEOUT),
        )
        if not isinstance(gate.retries, int) or isinstance(gate.retries, bool) or gate.retries < 1:
            problems.append(f"{where}: 'ready.retries' must be a positive integer")
        for field in ("delay", "max_delay", "timeout"):
            if not _positive_number(getattr(gate, field)):
                problems.append(f"{where}: 'ready.{field}' must be a positive number")
        if not _positive_number(gate.backoff) or gate.backoff < 1:
            problems.append(f"{where}: 'ready.backoff' must be a number >= 1")
        return gate

    def to_definition(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "retries": self.retries,
            "delay": self.delay,
            "backoff": self.backoff,
            "max_delay": self.max_delay,
            "timeout": self.timeout,
        }


class ProvisioningStep:
    """One ordered, idempotent unit of first-boot work."""

    def __init__(
        self,
        name: str,
        run: str,
        check: Optional[str] = None,
        ready: Optional[ReadinessGate] = None,
        timeout: float = DEFAULT_STEP_TIMEOUT,
    ):
        self.name = name
        self.run = run
        self.check = check
        self.ready = ready
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"ProvisioningStep({self.name!r})"

    @property
    def resumable(self) -> bool:
        """A step can be resumed in place when it can detect its own effect."""
        return bool(self.check)

    @classmethod
    def from_definition(
        cls, where: str, data: StepDefinition, problems: List[str]
    ) -> Optional["ProvisioningStep"]:
        if isinstance(data, str):
            problems.append(f"{where}: step must be a mapping with 'name' and 'run'")
            return None
        if not isinstance(data, dict):
            problems.append(f"{where}: step must be a mapping")
            return None

        name = data.get("name")
        run = data.get("run")
        if not name or not isinstance(name, str):
            problems.append(f"{where}: step needs a non-empty 'name'")
            return None
        if not STEP_NAME_RE.match(name):
            problems.append(f"{where}: step name '{name}' may only use letters, digits, '.', '_', '-'")
            return None
        where = f"{where} ({name})"
        if not run or not isinstance(run, str):
            problems.append(f"{where}: step needs a 'run' command")
            return None

        check = data.get("check")
        if check is not None and not isinstance(check, str):
            problems.append(f"{where}: 'check' must be a command")
            check = None

        timeout = data.get("timeout", DEFAULT_STEP_TIMEOUT)
        if not _positive_number(timeout):
            problems.append(f"{where}: 'timeout' must be a positive number")

        ready = None
        if data.get("ready") is not None:
            ready = ReadinessGate.from_definition(where, data["ready"], problems)

        return cls(name, run, check=check, ready=ready, timeout=timeout)

    def to_definition(self) -> StepDefinition:
        definition = {"name": self.name, "run": self.run, "timeout": self.timeout}
        if self.check:
            definition["check"] = self.check
        if self.ready:
            definition["ready"] = self.ready.to_definition()
        return definition


class BootstrapPlan:
    """Ordered provisioning steps plus where the runner keeps its state."""

    def __init__(
        self,
        name: str,
        steps: List[ProvisioningStep],
        secrets: Optional[Dict[str, Dict[str, Any]]] = None,
        marker: str = DEFAULT_MARKER_PATH,
        status: str = DEFAULT_STATUS_PATH,
        log: str = DEFAULT_LOG_PATH,
        secrets_file: str = DEFAULT_SECRETS_PATH,
    ):
        self.name = name
        self.steps = list(steps)
        self.secrets = dict(secrets or {})
        self.marker = marker
        self.status = status
        self.log = log
        self.secrets_file = secrets_file

    def __len__(self) -> int:
        return len(self.steps)

    @classmethod
    def from_definition(
        cls, name: str, data: BootstrapDefinition, problems: List[str]
    ) -> Optional["BootstrapPlan"]:
        where = f"bootstrap '{name}'"
        if not isinstance(data, dict):
            problems.append(f"{where}: definition must be a mapping")
            return None

        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            problems.append(f"{where}: 'steps' must be a non-empty list")
            raw_steps = []

        steps = []
        seen = set()
        for index, raw in enumerate(raw_steps):
            step = ProvisioningStep.from_definition(f"{where} step {index}", raw, problems)
            if step is None:
                continue
            if step.name in seen:
                problems.append(f"{where}: duplicate step name '{step.name}'")
            seen.add(step.name)
            steps.append(step)

        secrets = data.get("secrets") or {}
        if not isinstance(secrets, dict):
            problems.append(f"{where}: 'secrets' must be a mapping")
            secrets = {}
        for secret_name, source in secrets.items():
            _validate_secret(where, secret_name, source, problems)

        paths = {}
        for key, default in (
            ("marker", DEFAULT_MARKER_PATH),
            ("status", DEFAULT_STATUS_PATH),
            ("log", DEFAULT_LOG_PATH),
            ("secrets_file", DEFAULT_SECRETS_PATH),
        ):
            value = data.get(key, default)
            if not isinstance(value, str) or not value.startswith("/"):
                problems.append(f"{where}: '{key}' must be an absolute path")
            paths[key] = value

        return cls(name, steps, secrets=secrets, **paths)

    def to_definition(self) -> BootstrapDefinition:
        return {
            "secrets": self.secrets,
            "marker": self.marker,
            "status": self.status,
            "log": self.log,
            "secrets_file": self.secrets_file,
            "steps": [step.to_definition() for step in self.steps],
        }


def _validate_secret(where: str, name: Any, source: Any, problems: List[str]) -> None:
    if not isinstance(name, str) or not SECRET_NAME_RE.match(name):
        problems.append(f"{where}: secret name '{name}' must be an upper-case variable name")
        return
    if not isinstance(source, dict):
        problems.append(f"{where}: secret '{name}' must be a mapping")
        return
    kinds = [key for key in SECRET_SOURCES if key in source]
    if len(kinds) != 1:
        problems.append(
            f"{where}: secret '{name}' needs exactly one of {', '.join(SECRET_SOURCES)}"
        )
        return
    if kinds[0] == "generate":
        length = source["generate"]
        if not isinstance(length, int) or isinstance(length, bool) or not 8 <= length <= 128:
            problems.append(f"{where}: secret '{name}' length must be between 8 and 128")
