from __future__ import annotations

import argparse
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
import signal
import sys
from types import FrameType

from dotenv import load_dotenv

from storesync.app_store_connect import AppStoreConnectClient
from storesync.config import AppConfig, load_config
from storesync.deploy import DeployReconciler
from storesync.git_ops import LocalGitTagStore
from storesync.github_gateway import GitHubGateway
from storesync.notifier import ChangeRequestNotifier
from storesync.observability import configure_logging, log_event, log_warning
from storesync.registry_mutation import BuildRegistryMutation
from storesync.registry_query import BuildRegistryQuery
from storesync.release_sync import ReleaseSyncReconciler
from storesync.run_lock import RunLock
from storesync.tag_store import TagStore
from storesync.token_signer import TokenSigner


LOGGER = logging.getLogger("storesync.cli")
_DEFAULT_CONFIG_PATH = Path("storesync.toml")
_DEFAULT_ENV_FILE = Path(".env")


@dataclass(frozen=True)
class Services:
    query: BuildRegistryQuery
    mutation: BuildRegistryMutation
    tags: TagStore | None
    notifier: ChangeRequestNotifier


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storesync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Submit eligible builds for review and tag live releases"
    )
    run_parser.add_argument(
        "mode",
        nargs="?",
        choices=("deploy", "sync", "all"),
        default="all",
        help="Which reconciler to run (default: all)",
    )
    _add_common_arguments(run_parser)

    status_parser = subparsers.add_parser(
        "status", help="Show live, in-review, rejected and latest eligible beta builds"
    )
    _add_common_arguments(status_parser)

    cancel_parser = subparsers.add_parser(
        "cancel-review", help="Cancel the review submission of the version in review"
    )
    _add_common_arguments(cancel_parser)
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to storesync.toml (default: ./storesync.toml when present)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this file (default: ./.env when present)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log every decision but skip all mutating calls",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print the full run narrative to stderr, not just warnings",
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    _install_signal_handlers()

    try:
        load_dotenv(args.env_file or _DEFAULT_ENV_FILE, override=False)
        config = load_config(_resolve_config_path(args.config), dry_run=args.dry_run or None)
        configure_logging(
            args.verbose,
            state_dir=config.runtime.state_dir,
            dry_run=config.runtime.dry_run,
        )

        if args.command == "run":
            _cmd_run(config, mode=args.mode)
            return
        if args.command == "status":
            _cmd_status(config)
            return
        if args.command == "cancel-review":
            _cmd_cancel_review(config)
            return
        raise RuntimeError(f"Unknown command: {args.command}")
    except Exception as exc:  # noqa: BLE001
        log_warning(
            LOGGER,
            "run_failed",
            command=args.command,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        print(f"storesync: error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _cmd_run(config: AppConfig, *, mode: str) -> None:
    lock = RunLock(config.lock_path, stale_after_seconds=config.runtime.lock_stale_seconds)
    if not lock.acquire():
        # Another run is in progress; the next scheduled poll will catch up.
        return
    try:
        log_event(LOGGER, "run_started", mode=mode, dry_run=config.runtime.dry_run)
        with _open_services(config) as services:
            if mode in {"deploy", "all"}:
                DeployReconciler(
                    registry=services.query,
                    mutation=services.mutation,
                    notifier=services.notifier,
                    tags=services.tags,
                    config=config.deploy,
                    dry_run=config.runtime.dry_run,
                ).run()
            if mode in {"sync", "all"}:
                if services.tags is None:
                    log_warning(
                        LOGGER,
                        "release_sync_skipped",
                        reason="repo.local_path is not configured",
                    )
                else:
                    ReleaseSyncReconciler(
                        registry=services.query,
                        tags=services.tags,
                        notifier=services.notifier,
                        dry_run=config.runtime.dry_run,
                    ).run()
        log_event(LOGGER, "run_finished", mode=mode)
    finally:
        lock.release()


def _cmd_status(config: AppConfig) -> None:
    with _open_services(config) as services:
        query = services.query
        live = query.live_production_build()
        in_review = query.build_in_review()
        rejected = query.rejected_version()
        beta = query.latest_eligible_beta_build()

    print(f"App: {config.app_store.app_name} ({config.app_store.bundle_id})")
    if live.live:
        print(f"Live: version {live.version}, build {live.build_number}")
    else:
        print("Live: none")
    if in_review is not None:
        print(
            f"In review: version {in_review.version}, build {in_review.build_number} "
            f"[{in_review.state}]"
        )
    else:
        print("In review: none")
    if rejected is not None:
        print(
            f"Rejected: version {rejected.version}, build {rejected.build_number} "
            f"[{rejected.state}]"
        )
    else:
        print("Rejected: none")
    if beta is not None:
        print(f"Latest eligible beta: version {beta.version}, build {beta.build_number}")
    else:
        print("Latest eligible beta: none")


def _cmd_cancel_review(config: AppConfig) -> None:
    lock = RunLock(config.lock_path, stale_after_seconds=config.runtime.lock_stale_seconds)
    if not lock.acquire():
        return
    try:
        with _open_services(config) as services:
            in_review = services.query.build_in_review()
            if in_review is None:
                print("No version is in review")
                return
            if config.runtime.dry_run:
                log_event(
                    LOGGER,
                    "review_cancelled",
                    dry_run=True,
                    version=in_review.version,
                    version_id=in_review.version_id,
                )
                print(f"Would cancel review of version {in_review.version}")
                return
            services.mutation.cancel_review(in_review.version_id)
            print(f"Cancelled review of version {in_review.version}")
    finally:
        lock.release()


@contextmanager
def _open_services(config: AppConfig) -> Iterator[Services]:
    signer = TokenSigner(
        key_id=config.app_store.key_id,
        issuer_id=config.app_store.issuer_id,
        private_key=config.app_store.private_key,
    )
    with AppStoreConnectClient(
        signer,
        base_url=config.app_store.api_base_url,
        timeout_seconds=config.app_store.request_timeout_seconds,
    ) as client:
        query = BuildRegistryQuery(client, config.app_store)
        gateway = GitHubGateway(
            owner=config.repo.owner,
            name=config.repo.name,
            default_branch=config.repo.default_branch,
        )
        yield Services(
            query=query,
            mutation=BuildRegistryMutation(client, query),
            tags=_build_tag_store(config, gateway),
            notifier=gateway,
        )


def _build_tag_store(config: AppConfig, gateway: GitHubGateway) -> TagStore | None:
    if not config.release_sync_enabled:
        return None
    if config.repo.tag_backend == "github":
        return gateway
    return LocalGitTagStore(config.repo)


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is not None:
        return path
    if _DEFAULT_CONFIG_PATH.exists():
        return _DEFAULT_CONFIG_PATH
    return None


def _install_signal_handlers() -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _raise_system_exit)


def _raise_system_exit(signum: int, _frame: FrameType | None) -> None:
    # SystemExit unwinds through the finally blocks that release the run lock.
    log_event(LOGGER, "run_interrupted", signal=signal.Signals(signum).name)
    raise SystemExit(128 + signum)
