"""Submit the newest eligible beta build for App Store review.

At most one version may be in flight with App Review, so a poll that finds a
version in review (or rejected, unless resubmission is enabled) does nothing.
Every mutating step is idempotent or overwrite-only, which makes re-running a
partially failed poll safe.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal

from storesync.config import DeployConfig
from storesync.models import UNKNOWN, BuildRecord, CommitReference, is_full_sha, short_sha
from storesync.notifier import (
    ChangeRequestNotifier,
    compute_action_token,
    extract_release_notes,
    submitted_comment,
)
from storesync.observability import log_event, log_warning
from storesync.registry_mutation import BuildRegistryMutation
from storesync.registry_query import BuildRegistryQuery
from storesync.tag_store import TagStore


LOGGER = logging.getLogger("storesync.deploy")

DeployOutcome = Literal["in_review", "rejected", "no_eligible_build", "submitted"]


@dataclass(frozen=True)
class DeployCandidate:
    build: BuildRecord
    reference: CommitReference | None


@dataclass(frozen=True)
class DeployResult:
    outcome: DeployOutcome
    build_number: str | None = None
    version: str | None = None
    version_id: str | None = None
    pr_number: int | None = None


class DeployReconciler:
    def __init__(
        self,
        *,
        registry: BuildRegistryQuery,
        mutation: BuildRegistryMutation,
        notifier: ChangeRequestNotifier,
        tags: TagStore | None,
        config: DeployConfig,
        dry_run: bool = False,
    ) -> None:
        self._registry = registry
        self._mutation = mutation
        self._notifier = notifier
        self._tags = tags
        self._config = config
        self._dry_run = dry_run

    def run(self) -> DeployResult:
        log_event(
            LOGGER,
            "deploy_started",
            dry_run=self._dry_run,
            workflow_id=self._config.workflow_id,
        )
        in_review = self._registry.build_in_review()
        if in_review is not None:
            log_event(
                LOGGER,
                "deploy_skipped",
                reason="in_review",
                version=in_review.version,
                state=in_review.state,
                build_number=in_review.build_number,
            )
            return DeployResult(outcome="in_review", version=in_review.version)

        rejected = self._registry.rejected_version()
        if rejected is not None:
            if not self._config.resubmit_rejected:
                log_event(
                    LOGGER,
                    "deploy_skipped",
                    reason="rejected",
                    version=rejected.version,
                    state=rejected.state,
                    build_number=rejected.build_number,
                )
                return DeployResult(outcome="rejected", version=rejected.version)
            log_event(
                LOGGER,
                "deploy_resubmitting_rejected",
                version=rejected.version,
                state=rejected.state,
            )

        candidate = self._find_candidate()
        if candidate is None:
            log_event(LOGGER, "deploy_no_eligible_build")
            return DeployResult(outcome="no_eligible_build")

        build = candidate.build
        log_event(
            LOGGER,
            "deploy_candidate",
            build_number=build.build_number,
            version=build.version,
            beta_state=build.beta_state,
        )
        pr_number, notes = self._release_notes_for(build, candidate.reference)

        if self._dry_run:
            log_event(
                LOGGER,
                "deploy_submitted",
                dry_run=True,
                build_number=build.build_number,
                version=build.version,
                pr_number=pr_number,
            )
            return DeployResult(
                outcome="submitted",
                build_number=build.build_number,
                version=build.version,
                pr_number=pr_number,
            )

        handle = self._mutation.get_or_create_version(build.version)
        self._mutation.select_build(handle.version_id, build.build_id)
        self._mutation.set_release_notes(
            handle.version_id, notes, locale=self._config.release_notes_locale
        )
        self._mutation.submit_for_review(handle.version_id)
        log_event(
            LOGGER,
            "deploy_submitted",
            dry_run=False,
            build_number=build.build_number,
            version=build.version,
            version_id=handle.version_id,
            version_created=handle.created,
            pr_number=pr_number,
        )

        if pr_number is not None:
            self._announce(pr_number, version=build.version, build_number=build.build_number)
        return DeployResult(
            outcome="submitted",
            build_number=build.build_number,
            version=build.version,
            version_id=handle.version_id,
            pr_number=pr_number,
        )

    def _find_candidate(self) -> DeployCandidate | None:
        live = self._registry.live_production_build()
        live_number = _build_number_key(live.build_number) if live.live else None
        for build in self._registry.eligible_beta_builds():
            if build.version == UNKNOWN:
                log_event(
                    LOGGER, "deploy_build_skipped", build_number=build.build_number, reason="no_version"
                )
                continue
            if live.live and build.version == live.version:
                # The live version record cannot take another build.
                log_event(
                    LOGGER,
                    "deploy_build_skipped",
                    build_number=build.build_number,
                    reason="live_version",
                    version=build.version,
                )
                continue
            number = _build_number_key(build.build_number)
            if live_number is not None and number is not None and number <= live_number:
                log_event(
                    LOGGER,
                    "deploy_build_skipped",
                    build_number=build.build_number,
                    reason="not_newer_than_live",
                )
                continue
            reference: CommitReference | None = None
            if self._config.workflow_id is not None:
                reference = self._registry.commit_for_build(build.build_number)
                if reference is None or reference.workflow_id != self._config.workflow_id:
                    log_event(
                        LOGGER,
                        "deploy_build_skipped",
                        build_number=build.build_number,
                        reason="other_workflow",
                        workflow_id=reference.workflow_id if reference is not None else None,
                    )
                    continue
            return DeployCandidate(build=build, reference=reference)
        return None

    def _release_notes_for(
        self, build: BuildRecord, reference: CommitReference | None
    ) -> tuple[int | None, str]:
        default = self._config.default_release_notes
        try:
            if reference is None:
                reference = self._registry.commit_for_build(build.build_number)
            commit_sha = reference.commit_ref if reference is not None else None
            if commit_sha is not None and not is_full_sha(commit_sha):
                commit_sha = self._tags.resolve_ref(commit_sha) if self._tags is not None else None
            if commit_sha is None:
                log_event(LOGGER, "deploy_commit_unknown", build_number=build.build_number)
                return None, default
            pr_number = self._notifier.find_pull_request_for_commit(commit_sha)
            if pr_number is None:
                log_event(LOGGER, "deploy_no_pull_request", commit_sha=short_sha(commit_sha))
                return None, default
            details = self._notifier.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            # Release notes have a safe default; a lookup failure must not block submission.
            log_warning(
                LOGGER,
                "deploy_release_notes_lookup_failed",
                build_number=build.build_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None, default
        notes = extract_release_notes(details.body, details.title, default=default)
        log_event(LOGGER, "deploy_release_notes", pr_number=pr_number, length=len(notes))
        return pr_number, notes

    def _announce(self, pr_number: int, *, version: str, build_number: str) -> None:
        try:
            self._notifier.post_comment_once(
                pr_number,
                body=submitted_comment(version=version, build_number=build_number),
                token=compute_action_token(
                    kind="submitted", version=version, build_number=build_number
                ),
            )
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "pull_request_comment_failed",
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )


def _build_number_key(build_number: str) -> int | None:
    try:
        return int(build_number)
    except ValueError:
        return None
