"""Tag builds that went live on the App Store and announce them on their pull request.

The release tag ``v<version>-<build>`` is the durable record that a live build
was handled: once it exists every later poll stops at the existence check, even
if an earlier run died between tagging and commenting.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Literal

from storesync.models import ReleaseTag, is_full_sha, release_tag_name, short_sha
from storesync.notifier import ChangeRequestNotifier, compute_action_token, released_comment
from storesync.observability import log_event, log_warning
from storesync.registry_query import BuildRegistryQuery
from storesync.tag_store import RepositoryStateError, TagStore


LOGGER = logging.getLogger("storesync.release_sync")
_VERSION_PATTERN = re.compile(r"\d+\.\d+(\.\d+)?")

ReleaseSyncOutcome = Literal[
    "no_live_build",
    "already_tagged",
    "commit_not_found",
    "ref_unresolved",
    "tagged",
]


class InvalidVersionError(ValueError):
    pass


@dataclass(frozen=True)
class ReleaseSyncResult:
    outcome: ReleaseSyncOutcome
    tag_name: str | None = None
    commit_sha: str | None = None
    pr_number: int | None = None


class ReleaseSyncReconciler:
    def __init__(
        self,
        *,
        registry: BuildRegistryQuery,
        tags: TagStore,
        notifier: ChangeRequestNotifier,
        dry_run: bool = False,
    ) -> None:
        self._registry = registry
        self._tags = tags
        self._notifier = notifier
        self._dry_run = dry_run

    def run(self) -> ReleaseSyncResult:
        log_event(LOGGER, "release_sync_started", dry_run=self._dry_run)
        live = self._registry.live_production_build()
        if not live.live or live.build_number == "0" or live.version is None:
            log_event(LOGGER, "release_sync_no_live_build")
            return ReleaseSyncResult(outcome="no_live_build")

        version = live.version
        build_number = live.build_number
        log_event(LOGGER, "release_sync_live_build", version=version, build_number=build_number)
        if _VERSION_PATTERN.fullmatch(version) is None:
            raise InvalidVersionError(f"Invalid version format: {version!r}")

        tag_name = release_tag_name(version=version, build_number=build_number)
        self._tags.refresh()
        if self._tags.tag_exists(tag_name):
            log_event(LOGGER, "release_sync_already_tagged", tag=tag_name)
            return ReleaseSyncResult(outcome="already_tagged", tag_name=tag_name)

        log_event(LOGGER, "release_sync_new_release", tag=tag_name, build_number=build_number)
        reference = self._registry.commit_for_build(build_number)
        if reference is None or reference.commit_ref is None:
            # Builds from before commit tracking have no CI run to attribute them to.
            log_event(LOGGER, "release_sync_commit_not_found", build_number=build_number)
            return ReleaseSyncResult(outcome="commit_not_found", tag_name=tag_name)

        commit_sha = reference.commit_ref
        if not is_full_sha(commit_sha):
            resolved = self._tags.resolve_ref(commit_sha)
            if resolved is None:
                log_event(LOGGER, "release_sync_ref_unresolved", ref=commit_sha)
                return ReleaseSyncResult(outcome="ref_unresolved", tag_name=tag_name)
            log_event(LOGGER, "release_sync_ref_resolved", ref=commit_sha, commit_sha=resolved)
            commit_sha = resolved

        if not self._tags.commit_exists(commit_sha):
            raise RepositoryStateError(f"Commit {commit_sha} not found in repository")
        log_event(
            LOGGER,
            "release_sync_commit",
            commit_sha=short_sha(commit_sha),
            subject=self._tags.commit_subject(commit_sha),
        )

        tag = ReleaseTag.for_build(
            version=version, build_number=build_number, target_commit=commit_sha
        )
        if self._dry_run:
            log_event(
                LOGGER,
                "release_tag_created",
                dry_run=True,
                tag=tag.name,
                commit_sha=short_sha(commit_sha),
            )
        else:
            self._tags.create_tag(tag)
            log_event(
                LOGGER,
                "release_tag_created",
                dry_run=False,
                tag=tag.name,
                commit_sha=short_sha(commit_sha),
            )

        pr_number = self._announce(
            commit_sha=commit_sha, version=version, build_number=build_number
        )
        log_event(
            LOGGER,
            "release_sync_completed",
            tag=tag.name,
            build_number=build_number,
            pr_number=pr_number,
        )
        return ReleaseSyncResult(
            outcome="tagged", tag_name=tag.name, commit_sha=commit_sha, pr_number=pr_number
        )

    def _announce(self, *, commit_sha: str, version: str, build_number: str) -> int | None:
        try:
            pr_number = self._notifier.find_pull_request_for_commit(commit_sha)
            if pr_number is None:
                log_event(LOGGER, "release_sync_no_pull_request", commit_sha=short_sha(commit_sha))
                return None
            if self._dry_run:
                log_event(
                    LOGGER, "pull_request_comment_posted", dry_run=True, pr_number=pr_number
                )
                return pr_number
            self._notifier.post_comment_once(
                pr_number,
                body=released_comment(version=version, build_number=build_number),
                token=compute_action_token(
                    kind="released", version=version, build_number=build_number
                ),
            )
            return pr_number
        except Exception as exc:  # noqa: BLE001
            # The tag is already published; a missed comment must not fail the run.
            log_warning(
                LOGGER,
                "pull_request_comment_failed",
                commit_sha=short_sha(commit_sha),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
