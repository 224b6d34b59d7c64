from __future__ import annotations

from abc import ABC, abstractmethod
import hashlib
import logging
import re
from typing import Literal

from storesync.config import DEFAULT_RELEASE_NOTES
from storesync.models import PullRequestDetails
from storesync.observability import log_event


LOGGER = logging.getLogger("storesync.notifier")

ACTION_TOKEN_PATTERN = re.compile(r"<!--\s*storesync-action:([0-9a-f]{64})\s*-->")
_RELEASE_NOTES_PATTERN = re.compile(
    r"^##?[ \t]*Release Notes[ \t]*\n(.*?)(?=^#|\Z)", re.IGNORECASE | re.MULTILINE | re.DOTALL
)
CommentKind = Literal["submitted", "released"]


class ChangeRequestNotifier(ABC):
    """Pull request lookups and comment posting on the hosting service."""

    @abstractmethod
    def find_pull_request_for_commit(self, commit_sha: str) -> int | None:
        """Number of the merged pull request whose merge commit is ``commit_sha``."""

    @abstractmethod
    def get_pull_request(self, pr_number: int) -> PullRequestDetails:
        """Title and description of a pull request."""

    @abstractmethod
    def list_comment_bodies(self, pr_number: int) -> list[str]:
        """Bodies of every conversation comment on a pull request."""

    @abstractmethod
    def post_comment(self, pr_number: int, body: str) -> None:
        """Post a conversation comment on a pull request."""

    def post_comment_once(self, pr_number: int, *, body: str, token: str) -> bool:
        """Post ``body`` tagged with ``token`` unless a comment already carries the token."""
        if any(token in extract_action_tokens(text) for text in self.list_comment_bodies(pr_number)):
            log_event(LOGGER, "pull_request_comment_skipped", pr_number=pr_number, reason="exists")
            return False
        self.post_comment(pr_number, append_action_token(body=body, token=token))
        log_event(LOGGER, "pull_request_comment_posted", pr_number=pr_number)
        return True


def compute_action_token(*, kind: CommentKind, version: str, build_number: str) -> str:
    payload = f"{kind}:{version}:{build_number}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def extract_action_tokens(text: str) -> tuple[str, ...]:
    return tuple(match.group(1) for match in ACTION_TOKEN_PATTERN.finditer(text))


def append_action_token(*, body: str, token: str) -> str:
    marker = f"<!-- storesync-action:{token} -->"
    stripped = body.strip()
    if marker in stripped:
        return stripped
    if not stripped:
        return marker
    return f"{stripped}\n\n{marker}"


def extract_release_notes(
    body: str | None, title: str | None, *, default: str = DEFAULT_RELEASE_NOTES
) -> str:
    """Release notes from a ``## Release Notes`` section, else the title, else ``default``."""
    if body:
        match = _RELEASE_NOTES_PATTERN.search(body.replace("\r\n", "\n"))
        if match is not None:
            notes = match.group(1).strip()
            if notes:
                return notes
    if title and title.strip():
        return title.strip()
    return default


def submitted_comment(*, version: str, build_number: str) -> str:
    return f"Build #{build_number} (version {version}) has been submitted for App Store review."


def released_comment(*, version: str, build_number: str) -> str:
    return f"Build #{build_number} has been released to the App Store as version {version}."
