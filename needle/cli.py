"""
Needle CLI - Terminal attention triage for your GitHub pull requests.

Usage:
    needle                          # Dashboard for the token's owner
    needle --demo                   # Fake, deterministic data (no token needed)
    needle --days 7 --org acme-inc  # Narrow the window and the scope
    needle --purge-cache            # Forget all last-seen state first
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn

import click
from dotenv import load_dotenv
from loguru import logger

from . import __version__
from .config import ConfigError, NeedleConfig, get_needle_dir
from .demo import DEMO_USER, DemoSource, seeded_last_opened_at
from .github import FetchError, GitHubClient, get_token
from .log import setup_logging
from .model import AttentionSet, utcnow
from .notify import NotificationDispatcher
from .refresh import PullRequestSource, RefreshCoordinator, RefreshTimer
from .state import UiOptions, initial_state
from .store import SnapshotStore, StoreError, purge
from .tui import TerminalError, run_dashboard


EXIT_CONFIG_ERROR = 2
EXIT_RUNTIME_ERROR = 1


def load_environment() -> None:
    """Load .env from the current directory and from ~/.needle."""
    load_dotenv()
    load_dotenv(Path.cwd() / ".env")
    load_dotenv(get_needle_dir() / ".env")


def fail(message: str, code: int) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def open_store(config: NeedleConfig, purge_cache: bool) -> SnapshotStore | None:
    db_path = config.db_path
    if purge_cache:
        try:
            if purge(db_path):
                logger.info(f"Purged snapshot store {db_path}")
        except StoreError as e:
            logger.warning(str(e))
    try:
        store = SnapshotStore(db_path)
    except StoreError as e:
        logger.warning(f"Running without a snapshot store: {e}")
        return None
    if config.no_cache:
        try:
            store.clear()
        except StoreError as e:
            logger.warning(f"Could not clear snapshot store: {e}")
    return store


def build_source(config: NeedleConfig) -> tuple[PullRequestSource, str]:
    """Pick the PR source and the tracked user. Raises ConfigError or FetchError."""
    if config.demo:
        return DemoSource(), DEMO_USER
    token = get_token()
    if not token:
        raise ConfigError("Missing NEEDLE_GITHUB_TOKEN or GITHUB_TOKEN environment variable (or use --demo)")
    client = GitHubClient(token)
    user = config.user or client.viewer_login()
    return client, user


def warm_up_demo(coordinator: RefreshCoordinator, store: SnapshotStore | None) -> AttentionSet:
    """Two demo cycles, so some failures already look 'unchanged' on first render."""
    first = coordinator.refresh_now()
    if store is not None and first is not None and first.attention_set is not None:
        now = utcnow()
        for entry in first.attention_set:
            opened_at = seeded_last_opened_at(entry.key, now)
            if opened_at is not None:
                try:
                    store.record_opened(entry.identity, opened_at)
                except StoreError as e:
                    logger.warning(f"Could not seed demo history: {e}")
                    break
    second = coordinator.refresh_now()
    if second is not None and second.attention_set is not None:
        return second.attention_set
    return coordinator.seed()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--days", type=int, default=None, help="Only include PRs updated in the last N days (0 = no limit)")
@click.option("--demo", is_flag=True, help="Start with fake data (no GitHub token required)")
@click.option("--org", multiple=True, help="Only show PRs from these orgs/users (repeatable or comma-separated)")
@click.option("--include", multiple=True, help="Only show these repos, owner/repo (repeatable or comma-separated)")
@click.option("--exclude", multiple=True, help="Hide these repos, owner/repo (repeatable or comma-separated)")
@click.option("--include-team-requests", is_flag=True, help="Count review requests made to your teams")
@click.option("--bell", is_flag=True, help="Ring the terminal bell on important new events")
@click.option("--no-notifications", is_flag=True, help="Disable desktop notifications")
@click.option("--hide-pr-numbers", is_flag=True, help="Hide the PR number column")
@click.option("--hide-repo", is_flag=True, help="Hide the repository column")
@click.option("--hide-author", is_flag=True, help="Hide the author column")
@click.option("--no-cache", is_flag=True, help="Start empty and clear the cached snapshot")
@click.option("--purge-cache", is_flag=True, help="Delete the cache database before starting")
@click.option("--user", default=None, help="Track this GitHub login instead of the token's owner")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Config file (default: ~/.needle/config.yml or $NEEDLE_CONFIG)")
@click.option("--verbose", is_flag=True, help="Debug logging to ~/.needle/needle.log")
@click.version_option(__version__, "-V", "--version")
def main(
    days: int | None,
    demo: bool,
    org: tuple[str, ...],
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    include_team_requests: bool,
    bell: bool,
    no_notifications: bool,
    hide_pr_numbers: bool,
    hide_repo: bool,
    hide_author: bool,
    no_cache: bool,
    purge_cache: bool,
    user: str | None,
    config_path: Path | None,
    verbose: bool,
):
    """Triage the GitHub pull requests that need your attention."""
    load_environment()

    try:
        config = NeedleConfig.load(config_path).merge_cli(
            days=days,
            demo=demo,
            org=org,
            include=include,
            exclude=exclude,
            include_team_requests=include_team_requests,
            bell=bell,
            no_notifications=no_notifications,
            hide_pr_numbers=hide_pr_numbers,
            hide_repo=hide_repo,
            hide_author=hide_author,
            no_cache=no_cache,
            user=user,
            verbose=verbose,
        )
    except ConfigError as e:
        fail(str(e), EXIT_CONFIG_ERROR)

    log_file = setup_logging(config.log_path, config.verbose)
    logger.info(f"needle {__version__} starting (demo={config.demo}, days={config.days})")

    try:
        source, tracked_user = build_source(config)
    except ConfigError as e:
        fail(str(e), EXIT_CONFIG_ERROR)
    except FetchError as e:
        fail(f"Could not determine your GitHub login: {e} (pass --user to skip this lookup)", EXIT_RUNTIME_ERROR)

    store = open_store(config, purge_cache)
    coordinator = RefreshCoordinator(source, store, config, tracked_user)

    if config.demo:
        attention_set = warm_up_demo(coordinator, store)
    elif config.no_cache:
        attention_set = AttentionSet()
    else:
        attention_set = coordinator.seed()

    options = UiOptions(
        hide_pr_numbers=config.hide_pr_numbers,
        hide_repo=config.hide_repo,
        hide_author=config.hide_author,
        bell=config.bell,
        notifications=config.notifications_enabled,
        demo=config.demo,
    )
    state = initial_state(attention_set, options)
    timer = RefreshTimer.from_config(config)
    dispatcher = NotificationDispatcher(enabled=config.notifications_enabled)

    try:
        run_dashboard(coordinator, state, timer, dispatcher)
    except TerminalError as e:
        fail(str(e), EXIT_RUNTIME_ERROR)
    logger.info(f"needle exited; log at {log_file}")


if __name__ == "__main__":
    main()
