"""
Runtime configuration, read from the environment.

Prefixes default to the key layout of the production store; every value can
be overridden through environment variables or a .env file.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _list_env(env: Mapping[str, str], name: str) -> Tuple[str, ...]:
    raw = env.get(name) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass
class MaintenanceConfig:
    db_path: Path = Path("data/store.db")
    max_execution_ms: float = 8.0  # host ceiling is 10ms of CPU

    prefix_subscriber: str = "subscriber:"
    prefix_contact: str = "contact:"
    prefix_ratelimit: str = "ratelimit:"
    prefix_bot_detect: str = "botdetect:"
    prefix_captcha: str = "captcha:"
    keep_prefix_maintenance: str = "maintenance:"
    extra_keep_prefixes: Tuple[str, ...] = ()

    github_token: Optional[str] = None
    github_owner: Optional[str] = None
    github_backup_repo: Optional[str] = None
    github_backup_branch: str = "main"
    archive_dir: Optional[Path] = None

    @property
    def keep_prefixes(self) -> List[str]:
        """Prefixes that survive sweep_unkept; everything else is deleted."""
        return [
            self.prefix_subscriber,
            self.prefix_contact,
            self.keep_prefix_maintenance,
            *self.extra_keep_prefixes,
        ]

    @property
    def checkpoint_key(self) -> str:
        return f"{self.keep_prefix_maintenance}incremental-state"

    @property
    def completion_key(self) -> str:
        return f"{self.keep_prefix_maintenance}last-complete"

    @property
    def subscribers_buffer_key(self) -> str:
        return f"{self.keep_prefix_maintenance}backup-csv-subscribers"

    @property
    def contacts_buffer_key(self) -> str:
        return f"{self.keep_prefix_maintenance}backup-csv-contacts"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MaintenanceConfig":
        """Build a config from environment variables (os.environ by default)."""
        env = os.environ if env is None else env
        defaults = cls()
        archive_dir = env.get("KVSWEEP_ARCHIVE_DIR")
        return cls(
            db_path=Path(env.get("KVSWEEP_DB_PATH", str(defaults.db_path))),
            max_execution_ms=_float_env(env, "KVSWEEP_MAX_EXECUTION_MS", defaults.max_execution_ms),
            prefix_subscriber=env.get("PREFIX_SUBSCRIBER", defaults.prefix_subscriber),
            prefix_contact=env.get("PREFIX_CONTACT", defaults.prefix_contact),
            prefix_ratelimit=env.get("PREFIX_RATELIMIT", defaults.prefix_ratelimit),
            prefix_bot_detect=env.get("PREFIX_BOT_DETECT", defaults.prefix_bot_detect),
            prefix_captcha=env.get("PREFIX_CAPTCHA", defaults.prefix_captcha),
            keep_prefix_maintenance=env.get("KEEP_PREFIX_MAINTENANCE", defaults.keep_prefix_maintenance),
            extra_keep_prefixes=_list_env(env, "KEEP_PREFIXES_EXTRA"),
            github_token=env.get("GITHUB_TOKEN") or None,
            github_owner=env.get("GITHUB_OWNER") or None,
            github_backup_repo=env.get("GITHUB_BACKUP_REPO") or None,
            github_backup_branch=env.get("GITHUB_BACKUP_BRANCH", defaults.github_backup_branch),
            archive_dir=Path(archive_dir) if archive_dir else None,
        )
