"""
Configuration management for Lampstack.
"""

import os
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from jinja2 import Environment, FileSystemLoader
from mako.template import Template

from .constants import CLICK_STYLE, CONFIG_FILE_PATTERNS, DEFAULT_CONFIG_TEMPLATE
from .exceptions import ConfigurationError
from .types import CliOptions, LampstackConfig


class ConfigurationManager:
    """Handles loading, parsing, and processing of configuration files."""

    def __init__(self, options: CliOptions):
        self.verbose = options.get("verbose", False)
        self.config_path = options.get("config")
        self.quiet = options.get("quiet", False)

    def find_config_file(self) -> Optional[Path]:
        """Find the configuration file to use."""
        search_paths = []

        # An explicit --config wins over discovery
        if self.config_path:
            search_paths.append(Path(self.config_path))

        current_dir = Path.cwd()
        for pattern in CONFIG_FILE_PATTERNS:
            search_paths.append(current_dir / pattern)

        for path in search_paths:
            if path.is_file():
                if self.verbose and not self.quiet:
                    click.secho(f"Config found at: {path}", **CLICK_STYLE["success"])
                return path

        return None

    def _process_template(self, content: str, config_file: Path) -> str:
        """Process template content based on file extension."""
        if config_file.suffix == ".j2":
            if self.verbose and not self.quiet:
                click.secho("Using Jinja2 template processing...", **CLICK_STYLE["info"])
            env = Environment(loader=FileSystemLoader(str(config_file.parent)))
            template = env.from_string(content)
            return template.render(env=os.environ)

        elif config_file.suffix == ".mako":
            if self.verbose and not self.quiet:
                click.secho("Using Mako template processing...", **CLICK_STYLE["info"])
            template = Template(content)
            return template.render(env=os.environ)

        return content

    def load_config(self) -> LampstackConfig:
        """Load and parse the configuration file."""
        config_file = self.find_config_file()
        if config_file is None:
            if self.config_path:
                raise ConfigurationError(f"Config file not found: {self.config_path}")
            raise ConfigurationError(
                "No config file found. Run 'lampstack init' to create one."
            )

        try:
            with open(config_file, "r", encoding="utf-8") as file:
                content = file.read()

            content = self._process_template(content, config_file)
            config_data = yaml.safe_load(content)

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error reading {config_file}: {e}")

        if config_data is None:
            raise ConfigurationError(f"Configuration in {config_file} is empty")
        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration must be a YAML mapping")

        if self.verbose and not self.quiet:
            click.secho(
                f"Config loaded successfully from {config_file}",
                **CLICK_STYLE["success"],
            )
        return config_data

    def dump_config(self, config: LampstackConfig) -> None:
        """Dump configuration to stdout."""
        if not config:
            raise ConfigurationError("No configuration to dump")

        yaml.safe_dump(config, sys.stdout, default_flow_style=False, sort_keys=False)

    def create_example_config(self, filename: str = "lampstack.yaml") -> None:
        """Create an example configuration file."""
        config_path = Path(filename)

        if config_path.exists():
            raise ConfigurationError(f"{filename} already exists. Aborting.")

        try:
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(DEFAULT_CONFIG_TEMPLATE)
        except OSError as e:
            raise ConfigurationError(f"Error creating configuration file: {e}")

        if not self.quiet:
            click.secho(f"Example configuration written to {filename}", **CLICK_STYLE["success"])
