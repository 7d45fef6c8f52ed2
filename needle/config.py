"""
Configuration management for Needle.

Loads and validates ~/.needle/config.yml (or $NEEDLE_CONFIG) and merges it
with command-line flags into one immutable NeedleConfig, built once at startup.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from loguru import logger


CONFIG_FILENAME = "config.yml"
DB_FILENAME = "needle.db"
DEMO_DB_FILENAME = "demo.db"
LOG_FILENAME = "needle.log"

DEFAULT_DAYS = 30
DEFAULT_LIST_INTERVAL_SECS = 180
DEFAULT_DETAILS_INTERVAL_SECS = 30

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

DEFAULT_CONFIG_TEXT = """\
# Needle configuration. Command-line flags take precedence over these values.

# Only show PRs updated within this many days (0 = no limit).
# days: 30

# Limit to organizations or repositories (owner/repo).
# org: [my-company]
# include: [my-company/api]
# exclude: [my-company/sandbox]

# Count review requests made to one of your teams.
# include_team_requests: false

# Ring the terminal bell when a PR newly needs you.
# bell: false

# Disable desktop notifications.
# no_notifications: false

# Column visibility.
# hide_pr_numbers: false
# hide_repo: false
# hide_author: false

# Auto-refresh intervals in seconds.
# refresh_interval_list_secs: 180
# refresh_interval_details_secs: 30

# Require your approval before a PR counts as ready to merge.
# ready_to_merge_requires_approval: false

# Track a different GitHub login than the token's owner.
# user: octocat
"""


class ConfigError(Exception):
    """Invalid configuration; fatal at startup."""


@dataclass(frozen=True)
class NeedleConfig:
    """Complete Needle configuration."""

    days: int = DEFAULT_DAYS
    demo: bool = False
    org: tuple[str, ...] = ()
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    include_team_requests: bool = False
    bell: bool = False
    no_notifications: bool = False
    hide_pr_numbers: bool = False
    hide_repo: bool = False
    hide_author: bool = False
    no_cache: bool = False
    refresh_interval_list_secs: int = DEFAULT_LIST_INTERVAL_SECS
    refresh_interval_details_secs: int = DEFAULT_DETAILS_INTERVAL_SECS
    ready_to_merge_requires_approval: bool = False
    user: str | None = None
    verbose: bool = False

    @property
    def notifications_enabled(self) -> bool:
        return not self.no_notifications

    @property
    def db_path(self) -> Path:
        return get_needle_dir() / (DEMO_DB_FILENAME if self.demo else DB_FILENAME)

    @property
    def log_path(self) -> Path:
        return get_needle_dir() / LOG_FILENAME

    def validate(self) -> "NeedleConfig":
        if isinstance(self.days, bool) or not isinstance(self.days, int) or self.days < 0:
            raise ConfigError(f"days must be a non-negative integer, got {self.days!r}")
        for entry in self.org:
            if not entry or "/" in entry:
                raise ConfigError(f"Invalid org '{entry}': expected an organization name without '/'")
        for name, entries in (("include", self.include), ("exclude", self.exclude)):
            for entry in entries:
                if not _REPO_RE.match(entry):
                    raise ConfigError(f"Invalid {name} entry '{entry}': expected owner/repo")
        for name in ("refresh_interval_list_secs", "refresh_interval_details_secs"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        return self

    @classmethod
    def load(cls, path: Path | None = None) -> "NeedleConfig":
        """Load configuration from the YAML file, writing a default file if none exists."""
        if path is None:
            path = get_config_path()
        if not path.exists():
            write_default_config(path)
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping of settings")
        return cls._parse_config(data).validate()

    @classmethod
    def _parse_config(cls, data: dict[str, Any]) -> "NeedleConfig":
        defaults = cls()
        return cls(
            days=data.get("days", defaults.days),
            org=cls._parse_list(data.get("org"), "org"),
            include=cls._parse_list(data.get("include"), "include"),
            exclude=cls._parse_list(data.get("exclude"), "exclude"),
            include_team_requests=bool(data.get("include_team_requests", False)),
            bell=bool(data.get("bell", False)),
            no_notifications=bool(data.get("no_notifications", False)),
            hide_pr_numbers=bool(data.get("hide_pr_numbers", False)),
            hide_repo=bool(data.get("hide_repo", False)),
            hide_author=bool(data.get("hide_author", False)),
            refresh_interval_list_secs=data.get(
                "refresh_interval_list_secs", defaults.refresh_interval_list_secs
            ),
            refresh_interval_details_secs=data.get(
                "refresh_interval_details_secs", defaults.refresh_interval_details_secs
            ),
            ready_to_merge_requires_approval=bool(data.get("ready_to_merge_requires_approval", False)),
            user=data.get("user") or None,
        )

    @staticmethod
    def _parse_list(raw: Any, name: str) -> tuple[str, ...]:
        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            raise ConfigError(f"{name} must be a list of strings")
        return split_values(str(item) for item in raw)

    def merge_cli(
        self,
        *,
        days: int | None = None,
        demo: bool = False,
        org: tuple[str, ...] = (),
        include: tuple[str, ...] = (),
        exclude: tuple[str, ...] = (),
        include_team_requests: bool = False,
        bell: bool = False,
        no_notifications: bool = False,
        hide_pr_numbers: bool = False,
        hide_repo: bool = False,
        hide_author: bool = False,
        no_cache: bool = False,
        user: str | None = None,
        verbose: bool = False,
    ) -> "NeedleConfig":
        """Apply command-line overrides. Lists replace, booleans are OR-ed."""
        merged = replace(
            self,
            days=self.days if days is None else days,
            demo=self.demo or demo,
            org=split_values(org) or self.org,
            include=split_values(include) or self.include,
            exclude=split_values(exclude) or self.exclude,
            include_team_requests=self.include_team_requests or include_team_requests,
            bell=self.bell or bell,
            no_notifications=self.no_notifications or no_notifications,
            hide_pr_numbers=self.hide_pr_numbers or hide_pr_numbers,
            hide_repo=self.hide_repo or hide_repo,
            hide_author=self.hide_author or hide_author,
            no_cache=self.no_cache or no_cache,
            user=user or self.user,
            verbose=self.verbose or verbose,
        )
        return merged.validate()


def split_values(values) -> tuple[str, ...]:
    """Flatten repeated and comma-separated values, dropping blanks."""
    result: list[str] = []
    for value in values:
        for part in str(value).split(","):
            part = part.strip()
            if part and part not in result:
                result.append(part)
    return tuple(result)


def get_needle_dir() -> Path:
    """Get the ~/.needle directory path."""
    return Path.home() / ".needle"


def ensure_needle_dir() -> Path:
    needle_dir = get_needle_dir()
    needle_dir.mkdir(parents=True, exist_ok=True)
    return needle_dir


def get_config_path() -> Path:
    override = os.environ.get("NEEDLE_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_needle_dir() / CONFIG_FILENAME


def write_default_config(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG_TEXT, encoding="utf-8")
    except OSError as e:
        logger.debug(f"Could not write default config to {path}: {e}")
