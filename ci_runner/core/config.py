"""
Configuration
=============
Loads environment variables from .env file using python-dotenv, with an
optional YAML file layered on top.

Environment Variables:
    BUILDS_DIR           — Root directory for project checkouts (default: ~/builds)
    BUILD_TIMEOUT        — Default job timeout in seconds (default: 7200)
    IMAGE_LAYER_WARNING  — Chain length that triggers a layer-growth warning (default: 100)
    CI_RUNNER_CONFIG     — Path to a YAML config file (optional)

YAML keys:
    builds_dir, timeout, image_layer_warning, clean_env_prefixes,
    termination: [{signal: INT, grace: 2}, ...]

Timeout Philosophy:
    A bare-mode job gives every command the full timeout. A containerized
    job shares one wall-clock budget of the same size across its whole
    image chain.

The loaded RunnerConfig is an immutable value handed to the orchestrator.
Nothing reads these module globals once a build is running.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

import yaml
from dotenv import load_dotenv

from ci_runner.executor.termination import (
    DEFAULT_TERMINATION_POLICY,
    TerminationPolicy,
    TerminationStep,
    parse_signal,
)

load_dotenv()

logger = logging.getLogger(__name__)

BUILDS_DIR = os.path.expanduser(os.getenv("BUILDS_DIR", "~/builds"))
DEFAULT_BUILD_TIMEOUT = int(os.getenv("BUILD_TIMEOUT", 7200))
IMAGE_LAYER_WARNING = int(os.getenv("IMAGE_LAYER_WARNING", 100))
CONFIG_PATH_ENV = "CI_RUNNER_CONFIG"

# Host tool variables that must not leak into build commands
CLEAN_ENV_PREFIXES = (
    "BUNDLE_",
    "GEM_",
    "RUBYOPT",
    "VIRTUAL_ENV",
    "PYTHONHOME",
    "PYTHONPATH",
)


class ConfigError(ValueError):
    """Raised when runner configuration is missing or malformed."""


@dataclass(frozen=True)
class RunnerConfig:
    builds_dir: str = BUILDS_DIR
    default_timeout: int = DEFAULT_BUILD_TIMEOUT
    termination_policy: TerminationPolicy = DEFAULT_TERMINATION_POLICY
    clean_env_prefixes: tuple[str, ...] = CLEAN_ENV_PREFIXES
    image_layer_warning: int = IMAGE_LAYER_WARNING

    def __post_init__(self) -> None:
        if self.default_timeout <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.default_timeout}")
        if self.image_layer_warning <= 0:
            raise ConfigError(
                f"image_layer_warning must be > 0, got {self.image_layer_warning}"
            )


def _parse_termination(raw) -> TerminationPolicy:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("termination must be a non-empty list of {signal, grace} steps")
    steps = []
    for entry in raw:
        if not isinstance(entry, dict) or "signal" not in entry:
            raise ConfigError(f"Invalid termination step: {entry!r}")
        try:
            sig = parse_signal(entry["signal"])
            grace = float(entry.get("grace", 0))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid termination step {entry!r}: {e}") from e
        if grace < 0:
            raise ConfigError(f"Termination grace must be >= 0: {entry!r}")
        steps.append(TerminationStep(sig, grace))
    return TerminationPolicy(steps=tuple(steps))


def load_config(path: Optional[str] = None) -> RunnerConfig:
    """
    Build a RunnerConfig from environment defaults and an optional YAML file.

    Parameters
    ----------
    path : str | None
        YAML file to read. Falls back to $CI_RUNNER_CONFIG; when neither is
        set, environment defaults are used as-is.

    Raises
    ------
    ConfigError
        If the file is missing, is not a mapping, or holds invalid values.
    """
    path = path or os.getenv(CONFIG_PATH_ENV)
    if not path:
        return RunnerConfig()

    if not os.path.isfile(path):
        raise ConfigError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    overrides = {}
    if "builds_dir" in data:
        overrides["builds_dir"] = os.path.expanduser(str(data["builds_dir"]))
    try:
        if "timeout" in data:
            overrides["default_timeout"] = int(data["timeout"])
        if "image_layer_warning" in data:
            overrides["image_layer_warning"] = int(data["image_layer_warning"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric value in {path}: {e}") from e
    if "clean_env_prefixes" in data:
        prefixes = data["clean_env_prefixes"]
        if not isinstance(prefixes, list):
            raise ConfigError("clean_env_prefixes must be a list")
        overrides["clean_env_prefixes"] = tuple(str(p) for p in prefixes)
    if "termination" in data:
        overrides["termination_policy"] = _parse_termination(data["termination"])

    logger.info("Loaded runner config from %s | keys=%s", path, sorted(overrides))
    return RunnerConfig(**overrides)
