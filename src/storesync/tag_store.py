from __future__ import annotations

from abc import ABC, abstractmethod

from storesync.models import ReleaseTag


class RepositoryStateError(RuntimeError):
    """The repository does not contain state the release pipeline says it must."""


class TagStore(ABC):
    """Tag and commit capabilities of the source repository."""

    @abstractmethod
    def refresh(self) -> None:
        """Bring the local view of tags and branches up to date with the remote."""

    @abstractmethod
    def tag_exists(self, tag_name: str) -> bool:
        """Return True when ``tag_name`` already exists."""

    @abstractmethod
    def commit_exists(self, commit_sha: str) -> bool:
        """Return True when ``commit_sha`` names a commit in the repository history."""

    @abstractmethod
    def resolve_ref(self, ref: str) -> str | None:
        """Resolve a branch, tag or abbreviated sha to a full commit sha, or None."""

    @abstractmethod
    def commit_subject(self, commit_sha: str) -> str:
        """First line of the commit message, or an empty string when unavailable."""

    @abstractmethod
    def create_tag(self, tag: ReleaseTag) -> None:
        """Create ``tag`` as an annotated tag and publish it to the remote."""
