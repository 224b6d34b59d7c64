from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Final


READY_FOR_SALE: Final[str] = "READY_FOR_SALE"
PREPARE_FOR_SUBMISSION: Final[str] = "PREPARE_FOR_SUBMISSION"
REVIEW_STATES: Final[frozenset[str]] = frozenset(
    {"WAITING_FOR_REVIEW", "IN_REVIEW", "PENDING_DEVELOPER_RELEASE"}
)
REJECTED_STATES: Final[frozenset[str]] = frozenset(
    {"REJECTED", "DEVELOPER_REJECTED", "METADATA_REJECTED"}
)
# Versions that still accept a build selection and a review submission.
EDITABLE_STATES: Final[frozenset[str]] = REJECTED_STATES | {PREPARE_FOR_SUBMISSION}

NO_BUILD_NUMBER: Final[str] = "0"
UNKNOWN: Final[str] = "unknown"

_FULL_SHA_PATTERN = re.compile(r"[0-9a-fA-F]{40}")


@dataclass(frozen=True)
class AppVersionRecord:
    version_id: str
    version_string: str
    state: str
    build_id: str | None
    build_number: str | None


@dataclass(frozen=True)
class LiveBuild:
    live: bool
    build_number: str
    version: str | None = None


@dataclass(frozen=True)
class VersionStatus:
    version_id: str
    version: str
    state: str
    build_number: str


@dataclass(frozen=True)
class BuildRecord:
    build_id: str
    build_number: str
    version: str
    processing_state: str
    expired: bool = False
    beta_state: str = UNKNOWN


@dataclass(frozen=True)
class CommitReference:
    build_number: str
    commit_ref: str | None
    workflow_id: str
    workflow_name: str | None

    @property
    def is_full_sha(self) -> bool:
        return is_full_sha(self.commit_ref)


@dataclass(frozen=True)
class VersionHandle:
    version_id: str
    state: str
    created: bool


@dataclass(frozen=True)
class ReleaseTag:
    name: str
    target_commit: str
    message: str

    @classmethod
    def for_build(cls, *, version: str, build_number: str, target_commit: str) -> ReleaseTag:
        return cls(
            name=release_tag_name(version=version, build_number=build_number),
            target_commit=target_commit,
            message=f"Production release: version {version}, build {build_number}",
        )


@dataclass(frozen=True)
class PullRequestDetails:
    number: int
    title: str
    body: str
    html_url: str


def release_tag_name(*, version: str, build_number: str) -> str:
    return f"v{version}-{build_number}"


def is_full_sha(value: str | None) -> bool:
    if not value:
        return False
    return _FULL_SHA_PATTERN.fullmatch(value) is not None


def short_sha(value: str) -> str:
    return value[:7]
