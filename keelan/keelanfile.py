#!/usr/bin/env python3
"""
Keelanfile parsing for Keelan.

A Keelanfile is a YAML document describing how to build a crate and how to
run it:

    build_context:
      base_image: "root"
      work_directory: "/app"

    build_steps:
      - action: copy_files
        source: "./src"
        destination: "/app"
      - action: execute_command
        description: "Install Python3"
        command: ["apt-get", "install", "-y", "python3"]

    crate_config:
      expose_ports: [8000]
      environment_variables:
        PORT: "8000"

    runtime_command: ["python3", "-m", "http.server", "8000"]
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from keelan.errors import KeelanfileError

KEELANFILE_NAMES = ("Keelanfile", "Keelanfile.yml", "Keelanfile.yaml")

ACTION_EXECUTE = "execute_command"
ACTION_COPY = "copy_files"

KEELANFILE_TEMPLATE = """\
# Keelanfile
# Define how to build and run your crate

build_context:
  base_image: "root"
  work_directory: "/app"

build_steps:
  - action: copy_files
    source: "./src"
    destination: "/app"

  - action: execute_command
    description: "Update apt"
    command: ["apt-get", "update", "-y"]

  - action: execute_command
    description: "Install Python3"
    command: ["apt-get", "install", "-y", "python3"]

crate_config:
  expose_ports: [8000]
  environment_variables:
    APP_DEBUG: "true"
    PORT: "8000"

# runtime_entrypoint: ["python3"]
runtime_command: ["python3", "-m", "http.server", "8000"]
"""


@dataclass
class BuildContext:
    base_image: str
    work_directory: str


@dataclass
class BuildStep:
    """A single build step."""

    action: str
    source: Optional[str] = None
    destination: Optional[str] = None
    description: Optional[str] = None
    command: Optional[List[str]] = None
    shell: Optional[bool] = None
    fail_on_error: Optional[bool] = None

    @property
    def label(self) -> str:
        return self.description or self.action


@dataclass
class CrateConfig:
    expose_ports: List[int] = field(default_factory=list)
    environment_variables: Dict[str, str] = field(default_factory=dict)


@dataclass
class Keelanfile:
    """Parsed and validated Keelanfile."""

    build_context: BuildContext
    build_steps: List[BuildStep]
    crate_config: CrateConfig = field(default_factory=CrateConfig)
    runtime_entrypoint: Optional[List[str]] = None
    runtime_command: Optional[List[str]] = None

    @property
    def runtime(self) -> List[str]:
        """The argv a ship runs: runtime_command, else runtime_entrypoint."""
        return self.runtime_command or self.runtime_entrypoint or []


def _string_list(raw: Any, field_name: str) -> List[str]:
    if not isinstance(raw, list):
        raise KeelanfileError(f"{field_name} must be an array")
    for index, item in enumerate(raw):
        if not isinstance(item, str):
            raise KeelanfileError(f"{field_name}[{index}] must be a string")
    return list(raw)


def _build_context(raw: Any) -> BuildContext:
    if not isinstance(raw, dict):
        raise KeelanfileError("build_context must be an object")
    for key in ("base_image", "work_directory"):
        if not isinstance(raw.get(key), str):
            raise KeelanfileError(f"build_context.{key} must be a string")
    return BuildContext(raw["base_image"], raw["work_directory"])


def _build_step(raw: Any, index: int) -> BuildStep:
    prefix = f"build_steps[{index}]"
    if not isinstance(raw, dict):
        raise KeelanfileError(f"{prefix} must be an object")
    if not isinstance(raw.get("action"), str):
        raise KeelanfileError(f"{prefix}.action must be a string")

    step = BuildStep(action=raw["action"])

    for key in ("source", "destination", "description"):
        if key in raw:
            if not isinstance(raw[key], str):
                raise KeelanfileError(f"{prefix}.{key} must be a string")
            setattr(step, key, raw[key])

    if "command" in raw:
        step.command = _string_list(raw["command"], f"{prefix}.command")

    for key in ("shell", "fail_on_error"):
        if key in raw:
            if not isinstance(raw[key], bool):
                raise KeelanfileError(f"{prefix}.{key} must be a boolean")
            setattr(step, key, raw[key])

    return step


def _crate_config(raw: Any) -> CrateConfig:
    if raw is None:
        return CrateConfig()
    if not isinstance(raw, dict):
        raise KeelanfileError("crate_config must be an object")

    config = CrateConfig()

    ports = raw.get("expose_ports")
    if ports is not None:
        if not isinstance(ports, list):
            raise KeelanfileError("crate_config.expose_ports must be an array")
        for index, port in enumerate(ports):
            # bool is an int subclass
            if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
                raise KeelanfileError(
                    f"crate_config.expose_ports[{index}] must be an integer "
                    "between 1 and 65535"
                )
        config.expose_ports = list(ports)

    env = raw.get("environment_variables")
    if env is not None:
        if not isinstance(env, dict):
            raise KeelanfileError(
                "crate_config.environment_variables must be an object"
            )
        for key, value in env.items():
            if not isinstance(value, str):
                raise KeelanfileError(
                    f"crate_config.environment_variables.{key} must be a string"
                )
        config.environment_variables = {str(k): v for k, v in env.items()}

    return config


def parse_keelanfile(content: str) -> Keelanfile:
    """
    Parse Keelanfile content.

    Args:
        content: YAML document

    Returns:
        Validated Keelanfile

    Raises:
        KeelanfileError: If the document is not valid YAML or fails validation
    """
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise KeelanfileError(f"YAML parsing error: {e}") from e

    if not isinstance(raw, dict):
        raise KeelanfileError("Invalid YAML format: expected object")

    steps = raw.get("build_steps")
    if not isinstance(steps, list):
        raise KeelanfileError("build_steps must be an array")
    if not steps:
        raise KeelanfileError("build_steps cannot be empty")

    keelanfile = Keelanfile(
        build_context=_build_context(raw.get("build_context")),
        build_steps=[_build_step(step, i) for i, step in enumerate(steps)],
        crate_config=_crate_config(raw.get("crate_config")),
    )

    if raw.get("runtime_entrypoint") is not None:
        keelanfile.runtime_entrypoint = _string_list(
            raw["runtime_entrypoint"], "runtime_entrypoint"
        )
    if raw.get("runtime_command") is not None:
        keelanfile.runtime_command = _string_list(
            raw["runtime_command"], "runtime_command"
        )

    return keelanfile


def find_keelanfile(directory: str = ".") -> Optional[str]:
    """Return the first Keelanfile found in ``directory``, if any."""
    for name in KEELANFILE_NAMES:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


def load_keelanfile(path: str) -> Keelanfile:
    """Read and parse the Keelanfile at ``path``."""
    if not os.path.exists(path):
        raise KeelanfileError(f"Keelanfile not found: {path}")
    with open(path, "r") as f:
        return parse_keelanfile(f.read())
