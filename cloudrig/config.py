"""TOML-based cloudrig configuration.

Loads ~/.cloudrig/config.toml (global) and cloudrig.toml (project), merges
them, and resolves the ``[aws]`` table into a ``CloudrigConfig``.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError
from botocore.session import Session as BotocoreSession

from .constants import (
    COMMAND_POLL_INTERVAL,
    DEFAULT_INSTANCE_TYPE,
    DEFAULT_KEY_PATH,
    DEFAULT_MAX_PRICE,
    FULFILLMENT_POLL_INTERVAL,
    IMAGE_WAIT_DELAY,
    IMAGE_WAIT_MAX_ATTEMPTS,
    INSTANCE_WAIT_DELAY,
    INSTANCE_WAIT_MAX_ATTEMPTS,
)

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cloudrig" / "config.toml"
PROJECT_CONFIG_NAME = "cloudrig.toml"

REQUIRED_CONFIG = ("profile", "max_price", "region")


@dataclass(frozen=True, slots=True)
class CloudrigConfig:
    """Session configuration.

    Example:
        >>> from cloudrig.config import CloudrigConfig
        >>> config = CloudrigConfig(profile="default", region="ap-southeast-2")

    Args:
        profile: Named AWS credentials profile.
        region: AWS region for every resource.
        max_price: Maximum spot bid, as the string EC2 expects. Default: "0.4"
        instance_type: EC2 instance type requested from the spot fleet.
        key_path: Where the key pair's private material is written.
        poll_interval: Seconds between fulfillment/running polls.
        poll_backoff: Multiplier applied to the interval after every poll.
        max_poll_interval: Cap for the backed-off interval.
        start_timeout: Deadline for each start() polling loop. None polls forever.
        command_poll_interval: Seconds between command status polls.
        command_timeout: Deadline for run(). None polls forever.
    """

    profile: str
    region: str
    max_price: str = DEFAULT_MAX_PRICE
    instance_type: str = DEFAULT_INSTANCE_TYPE
    key_path: str = DEFAULT_KEY_PATH
    poll_interval: float = FULFILLMENT_POLL_INTERVAL
    poll_backoff: float = 1.0
    max_poll_interval: float = 60.0
    start_timeout: float | None = None
    command_poll_interval: float = COMMAND_POLL_INTERVAL
    command_timeout: float | None = None
    image_wait_delay: int = IMAGE_WAIT_DELAY
    image_wait_max_attempts: int = IMAGE_WAIT_MAX_ATTEMPTS
    instance_wait_delay: int = INSTANCE_WAIT_DELAY
    instance_wait_max_attempts: int = INSTANCE_WAIT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        # TOML users write max_price = 0.4
        object.__setattr__(self, "max_price", str(self.max_price))

    @classmethod
    def from_dict(cls, raw: RawConfig) -> CloudrigConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        missing = [key for key in ("profile", "region") if key not in raw]
        if missing:
            raise ValueError(f"Missing required config keys: {', '.join(missing)}")
        return cls(**raw)

    def image_waiter(self) -> dict[str, int]:
        return {"Delay": self.image_wait_delay, "MaxAttempts": self.image_wait_max_attempts}

    def instance_waiter(self) -> dict[str, int]:
        return {"Delay": self.instance_wait_delay, "MaxAttempts": self.instance_wait_max_attempts}


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    """Tables merge key by key; any other value in ``override`` wins."""
    merged = {**base}
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = (
            _deep_merge(current, value)
            if isinstance(current, dict) and isinstance(value, dict)
            else value
        )
    return merged


def _read_toml(path: Path) -> RawConfig:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Project file over global file, both optional."""
    layers = (
        _read_toml(global_path or GLOBAL_CONFIG_PATH),
        _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME),
    )
    merged: RawConfig = {"aws": {}}
    for layer in layers:
        merged = _deep_merge(merged, layer)
    return merged


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    **overrides: Any,
) -> CloudrigConfig:
    """Build the session config from the merged TOML files and ``overrides``."""
    raw = load_config(project_dir=project_dir, global_path=global_path)
    return CloudrigConfig.from_dict(_deep_merge(raw["aws"], overrides))


def required_config() -> tuple[str, ...]:
    """Keys the front end must collect before a session can start."""
    return REQUIRED_CONFIG


def validate_config(config: CloudrigConfig) -> list[str]:
    """Check that ``config.profile`` resolves to usable credentials.

    Returns:
        Human-readable failures. Empty when the config is valid.
    """
    try:
        credentials = BotocoreSession(profile=config.profile).get_credentials()
    except BotoCoreError:
        return ["AWS profile not found"]

    if credentials is None or not credentials.access_key:
        return ["AWS profile not found"]
    return []
