"""
Boot-time credential resolution.

Secrets are declared by name in a bootstrap plan and resolved on the
instance, never embedded in the desired state or the rendered Terraform.
"""

import os
import secrets
import string
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

from .exceptions import SecretError
from .steps import BootstrapPlan
from .types import Environment

# Generated values end up in SQL and sed expressions; keep them plain
ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class SecretStore:
    """A 0600 KEY=VALUE file that keeps generated secrets stable across boots."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, str]:
        if not self.path.is_file():
            return {}
        values = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, _, value = line.partition("=")
                    values[key] = value
        except OSError as e:
            raise SecretError(f"Cannot read secrets file {self.path}: {e}")
        return values

    def save(self, values: Mapping[str, str]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for key in sorted(values):
                    f.write(f"{key}={values[key]}\n")
            os.replace(tmp, self.path)
        except OSError as e:
            raise SecretError(f"Cannot write secrets file {self.path}: {e}")


class CredentialProvider:
    """Resolves the secrets a plan declares from env, files or generation."""

    def __init__(self, store: SecretStore, environ: Optional[Mapping[str, str]] = None):
        self.store = store
        self.environ = os.environ if environ is None else environ

    def resolve(self, plan: BootstrapPlan) -> Environment:
        resolved: Environment = {}
        stored = self.store.load()
        generated = False

        for name, source in plan.secrets.items():
            if "env" in source:
                value = self.environ.get(source["env"])
                if value is None:
                    raise SecretError(f"Secret {name}: environment variable {source['env']} is not set")
            elif "file" in source:
                try:
                    with open(source["file"], "r", encoding="utf-8") as f:
                        value = f.read().strip()
                except OSError as e:
                    raise SecretError(f"Secret {name}: cannot read {source['file']}: {e}")
            else:
                value = stored.get(name)
                if value is None:
                    value = generate_secret(source["generate"])
                    stored[name] = value
                    generated = True
            resolved[name] = value

        if generated:
            self.store.save(stored)
        return resolved

    @contextmanager
    def scoped(self, plan: BootstrapPlan) -> Iterator[Environment]:
        """Yield resolved secrets and drop them once the block exits."""
        values = self.resolve(plan)
        try:
            yield values
        finally:
            values.clear()
