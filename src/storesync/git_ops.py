from __future__ import annotations

from pathlib import Path
import logging

from storesync.config import RepoConfig
from storesync.models import ReleaseTag, short_sha
from storesync.observability import log_event
from storesync.shell import CommandError, run
from storesync.tag_store import TagStore


LOGGER = logging.getLogger("storesync.git_ops")


class LocalGitTagStore(TagStore):
    """Tag store backed by ``git`` commands against a local clone."""

    def __init__(self, repo: RepoConfig) -> None:
        if repo.local_path is None:
            raise ValueError("LocalGitTagStore requires repo.local_path")
        self.repo = repo
        self.checkout_path: Path = repo.local_path

    def refresh(self) -> None:
        log_event(
            LOGGER,
            "git_fetch_origin",
            checkout_path=str(self.checkout_path),
            remote=self.repo.remote,
        )
        # --prune also drops local tags whose push never landed, so they get recreated.
        self._git("fetch", self.repo.remote, "--prune", "--tags")

    def tag_exists(self, tag_name: str) -> bool:
        if not _is_safe_ref(tag_name):
            return False
        try:
            self._git("rev-parse", "--verify", "--quiet", f"refs/tags/{tag_name}")
        except CommandError:
            return False
        return True

    def commit_exists(self, commit_sha: str) -> bool:
        if not _is_safe_ref(commit_sha):
            return False
        try:
            self._git("cat-file", "-e", f"{commit_sha}^{{commit}}")
        except CommandError:
            return False
        return True

    def resolve_ref(self, ref: str) -> str | None:
        if not _is_safe_ref(ref):
            return None
        for candidate in (ref, f"{self.repo.remote}/{ref}"):
            try:
                resolved = self._git(
                    "rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"
                ).strip()
            except CommandError:
                continue
            if resolved:
                log_event(LOGGER, "git_ref_resolved", ref=candidate, commit_sha=resolved)
                return resolved
        return None

    def commit_subject(self, commit_sha: str) -> str:
        if not _is_safe_ref(commit_sha):
            return ""
        try:
            return self._git("log", "-1", "--pretty=%s", commit_sha).strip()
        except CommandError:
            return ""

    def create_tag(self, tag: ReleaseTag) -> None:
        log_event(
            LOGGER,
            "git_tag_create",
            checkout_path=str(self.checkout_path),
            tag=tag.name,
            commit_sha=short_sha(tag.target_commit),
        )
        self._git("tag", "-a", tag.name, tag.target_commit, "-m", tag.message)
        try:
            self._git("push", self.repo.remote, f"refs/tags/{tag.name}")
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(self.checkout_path),
                tag=tag.name,
                error_type=type(exc).__name__,
            )
            raise

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.checkout_path), *args])


def _is_safe_ref(value: str) -> bool:
    return bool(value) and not value.startswith("-") and not any(ch.isspace() for ch in value)
