"""
Relay configuration and YAML profile loading.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigError
from .negotiation import GLARE_POLICIES

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"


@dataclass
class RelayConfig:
    """Top level relay configuration."""

    profile: str = "default"
    host: str = "127.0.0.1"
    port: int = 8080
    max_members: int = 2
    session_idle_timeout: float = 300.0
    sweep_interval: float = 30.0
    queue_size: int = 256
    max_pending_candidates: int = 256
    glare_policy: str = "lexicographic"
    ws_ping_interval: float = 20.0
    ws_ping_timeout: float = 20.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.max_members < 2:
            raise ConfigError("max_members must be at least 2")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port {self.port} is out of range")
        if self.queue_size < 1:
            raise ConfigError("queue_size must be positive")
        if self.max_pending_candidates < 1:
            raise ConfigError("max_pending_candidates must be positive")
        if self.sweep_interval <= 0:
            raise ConfigError("sweep_interval must be positive")
        if self.glare_policy not in GLARE_POLICIES:
            raise ConfigError(
                f"glare_policy must be one of {', '.join(GLARE_POLICIES)}, got '{self.glare_policy}'"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, profile: str = "default") -> "RelayConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        values = dict(data)
        values.setdefault("profile", profile)
        try:
            return cls(**values)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    @classmethod
    def from_profile(
        cls,
        name: str = "default",
        path: Optional[Union[str, Path]] = None,
    ) -> "RelayConfig":
        profiles = load_profiles(path)
        if name not in profiles:
            if name == "default":
                return cls()
            raise ConfigError(f"profile '{name}' not found")
        return cls.from_mapping(profiles.get(name) or {}, profile=name)

    def override(self, **changes: Any) -> "RelayConfig":
        """Return a copy with every non-None value in ``changes`` applied."""

        applied = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **applied)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_profiles(path: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    profiles_path = Path(path) if path is not None else PROFILES_PATH
    try:
        with profiles_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        if path is not None:
            raise ConfigError(f"configuration file {profiles_path} not found") from None
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {profiles_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{profiles_path} must contain a mapping of profiles")
    profiles = data.get("profiles", data)
    if not isinstance(profiles, dict):
        raise ConfigError(f"{profiles_path}: 'profiles' must be a mapping")
    return profiles


__all__ = ["CONFIG_DIR", "PROFILES_PATH", "RelayConfig", "load_profiles"]
