"""Configuration for the gpodder.net sync client."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_BASE_URL = "https://gpodder.net"
DEFAULT_STATE_FILE = "./.gpodder-sync-state.json"


@dataclass
class Credentials:
    """Account credentials and the device this client syncs as."""

    username: str
    password: str
    device_id: str
    base_url: str = DEFAULT_BASE_URL

    @classmethod
    def from_env(cls, env_file: Path | str | None = None) -> "Credentials":
        """Load credentials from the environment (and a .env file, if present).

        Reads GPODDER_USERNAME, GPODDER_PASSWORD, GPODDER_DEVICE_ID and the
        optional GPODDER_BASE_URL.
        """
        load_dotenv(env_file)

        username = os.getenv("GPODDER_USERNAME", "")
        password = os.getenv("GPODDER_PASSWORD", "")
        device_id = os.getenv("GPODDER_DEVICE_ID", "")

        if not username or not password:
            raise ValueError(
                "Missing gpodder.net credentials. Set GPODDER_USERNAME and "
                "GPODDER_PASSWORD environment variables or pass them directly."
            )
        if not device_id:
            raise ValueError("Missing device id. Set GPODDER_DEVICE_ID.")

        return cls(
            username=username,
            password=password,
            device_id=device_id,
            base_url=os.getenv("GPODDER_BASE_URL", DEFAULT_BASE_URL),
        )

    def __repr__(self) -> str:
        return (
            f"Credentials(username={self.username!r}, device_id={self.device_id!r}, "
            f"base_url={self.base_url!r})"
        )


@dataclass
class ClientConfig:
    """Client settings that are not secrets.

    Stored as YAML, for example::

        base_url: https://gpodder.net
        timeout: 30
        state_file: ./.gpodder-sync-state.json
    """

    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30
    user_agent: str = "gpodder-sync/0.1.0"
    state_file: str = DEFAULT_STATE_FILE
    aggregated_actions: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientConfig":
        """Create from dictionary."""
        return cls(
            base_url=str(data.get("base_url", DEFAULT_BASE_URL)).rstrip("/"),
            timeout=float(data.get("timeout", 30)),
            user_agent=data.get("user_agent", "gpodder-sync/0.1.0"),
            state_file=data.get("state_file", DEFAULT_STATE_FILE),
            aggregated_actions=bool(data.get("aggregated_actions", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "base_url": self.base_url,
            "timeout": self.timeout,
            "user_agent": self.user_agent,
            "state_file": self.state_file,
            "aggregated_actions": self.aggregated_actions,
        }

    @classmethod
    def load(cls, config_path: Path) -> "ClientConfig":
        """Load configuration from YAML file."""
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def state_path(self, base_dir: Path | None = None) -> Path:
        """Resolve the state file relative to ``base_dir`` (default: cwd)."""
        path = Path(self.state_file).expanduser()
        if path.is_absolute():
            return path
        return (base_dir or Path.cwd()) / path
