from __future__ import annotations

import pytest

from storesync.models import CommitReference, LiveBuild, PullRequestDetails, ReleaseTag
from storesync.notifier import ChangeRequestNotifier, compute_action_token
from storesync.release_sync import InvalidVersionError, ReleaseSyncReconciler
from storesync.tag_store import RepositoryStateError, TagStore


SHA = "c" * 40


class FakeRegistry:
    def __init__(self, live: LiveBuild, reference: CommitReference | None = None) -> None:
        self.live = live
        self.reference = reference
        self.calls: list[str] = []

    def live_production_build(self) -> LiveBuild:
        self.calls.append("live_production_build")
        return self.live

    def commit_for_build(self, build_number: str) -> CommitReference | None:
        self.calls.append(f"commit_for_build:{build_number}")
        return self.reference


class FakeTags(TagStore):
    def __init__(
        self,
        *,
        existing_tags: set[str] | None = None,
        commits: set[str] | None = None,
        refs: dict[str, str] | None = None,
    ) -> None:
        self.existing_tags = existing_tags or set()
        self.commits = commits if commits is not None else {SHA}
        self.refs = refs or {}
        self.calls: list[str] = []
        self.created: list[ReleaseTag] = []

    def refresh(self) -> None:
        self.calls.append("refresh")

    def tag_exists(self, tag_name: str) -> bool:
        self.calls.append(f"tag_exists:{tag_name}")
        return tag_name in self.existing_tags

    def commit_exists(self, commit_sha: str) -> bool:
        self.calls.append(f"commit_exists:{commit_sha}")
        return commit_sha in self.commits

    def resolve_ref(self, ref: str) -> str | None:
        self.calls.append(f"resolve_ref:{ref}")
        return self.refs.get(ref)

    def commit_subject(self, commit_sha: str) -> str:
        _ = commit_sha
        return "Ship it"

    def create_tag(self, tag: ReleaseTag) -> None:
        self.calls.append(f"create_tag:{tag.name}")
        self.created.append(tag)


class FakeNotifier(ChangeRequestNotifier):
    def __init__(self, *, pr_number: int | None = 42, fail: bool = False) -> None:
        self.pr_number = pr_number
        self.fail = fail
        self.comments: dict[int, list[str]] = {}
        self.calls: list[str] = []

    def find_pull_request_for_commit(self, commit_sha: str) -> int | None:
        self.calls.append(f"find_pull_request_for_commit:{commit_sha}")
        if self.fail:
            raise RuntimeError("github down")
        return self.pr_number

    def get_pull_request(self, pr_number: int) -> PullRequestDetails:
        return PullRequestDetails(number=pr_number, title="", body="", html_url="")

    def list_comment_bodies(self, pr_number: int) -> list[str]:
        return list(self.comments.get(pr_number, []))

    def post_comment(self, pr_number: int, body: str) -> None:
        self.calls.append(f"post_comment:{pr_number}")
        self.comments.setdefault(pr_number, []).append(body)


def _reconciler(
    registry: FakeRegistry,
    tags: FakeTags,
    notifier: FakeNotifier,
    *,
    dry_run: bool = False,
) -> ReleaseSyncReconciler:
    return ReleaseSyncReconciler(
        registry=registry,  # type: ignore[arg-type]
        tags=tags,
        notifier=notifier,
        dry_run=dry_run,
    )


def _live_1400() -> LiveBuild:
    return LiveBuild(live=True, version="1.4", build_number="1400")


def _reference(commit_ref: str | None = SHA) -> CommitReference:
    return CommitReference(
        build_number="1400", commit_ref=commit_ref, workflow_id="wf", workflow_name="Release"
    )


def test_new_live_build_is_tagged_and_announced_once() -> None:
    registry = FakeRegistry(_live_1400(), _reference())
    tags = FakeTags()
    notifier = FakeNotifier()

    result = _reconciler(registry, tags, notifier).run()

    assert result.outcome == "tagged"
    assert result.tag_name == "v1.4-1400"
    assert result.pr_number == 42
    assert tags.created == [
        ReleaseTag(
            name="v1.4-1400",
            target_commit=SHA,
            message="Production release: version 1.4, build 1400",
        )
    ]
    assert tags.calls[:2] == ["refresh", "tag_exists:v1.4-1400"]
    assert len(notifier.comments[42]) == 1
    token = compute_action_token(kind="released", version="1.4", build_number="1400")
    assert token in notifier.comments[42][0]
    assert notifier.comments[42][0].startswith(
        "Build #1400 has been released to the App Store as version 1.4."
    )


def test_existing_tag_stops_after_existence_check() -> None:
    registry = FakeRegistry(_live_1400(), _reference())
    tags = FakeTags(existing_tags={"v1.4-1400"})
    notifier = FakeNotifier()

    result = _reconciler(registry, tags, notifier).run()

    assert result.outcome == "already_tagged"
    assert tags.calls == ["refresh", "tag_exists:v1.4-1400"]
    assert registry.calls == ["live_production_build"]
    assert notifier.calls == []


@pytest.mark.parametrize(
    "live",
    [
        LiveBuild(live=False, build_number="0"),
        LiveBuild(live=True, version="1.4", build_number="0"),
    ],
)
def test_no_live_build_does_nothing(live: LiveBuild) -> None:
    registry = FakeRegistry(live)
    tags = FakeTags()
    notifier = FakeNotifier()

    result = _reconciler(registry, tags, notifier).run()

    assert result.outcome == "no_live_build"
    assert tags.calls == []
    assert notifier.calls == []


@pytest.mark.parametrize("version", ["1", "1.4.2.1", "v1.4", "1.4-beta", ""])
def test_invalid_version_aborts_before_tag_lookup(version: str) -> None:
    registry = FakeRegistry(LiveBuild(live=True, version=version, build_number="1400"))
    tags = FakeTags()

    with pytest.raises(InvalidVersionError):
        _reconciler(registry, tags, FakeNotifier()).run()
    assert tags.calls == []


def test_three_part_version_is_accepted() -> None:
    registry = FakeRegistry(LiveBuild(live=True, version="2.10.3", build_number="7"), None)
    tags = FakeTags()

    result = _reconciler(registry, tags, FakeNotifier()).run()

    assert result.outcome == "commit_not_found"
    assert tags.calls == ["refresh", "tag_exists:v2.10.3-7"]


def test_missing_commit_reference_exits_quietly() -> None:
    tags = FakeTags()
    result = _reconciler(FakeRegistry(_live_1400(), _reference(None)), tags, FakeNotifier()).run()

    assert result.outcome == "commit_not_found"
    assert tags.created == []


def test_symbolic_ref_is_resolved_before_tagging() -> None:
    registry = FakeRegistry(_live_1400(), _reference("release/1.4"))
    tags = FakeTags(refs={"release/1.4": SHA})

    result = _reconciler(registry, tags, FakeNotifier()).run()

    assert result.outcome == "tagged"
    assert result.commit_sha == SHA
    assert "resolve_ref:release/1.4" in tags.calls
    assert tags.created[0].target_commit == SHA


def test_unresolvable_ref_exits_quietly() -> None:
    tags = FakeTags()
    result = _reconciler(
        FakeRegistry(_live_1400(), _reference("gone")), tags, FakeNotifier()
    ).run()

    assert result.outcome == "ref_unresolved"
    assert tags.created == []


def test_commit_missing_from_repository_is_fatal() -> None:
    tags = FakeTags(commits=set())

    with pytest.raises(RepositoryStateError, match=SHA):
        _reconciler(FakeRegistry(_live_1400(), _reference()), tags, FakeNotifier()).run()
    assert tags.created == []


def test_dry_run_skips_tag_and_comment() -> None:
    tags = FakeTags()
    notifier = FakeNotifier()

    result = _reconciler(
        FakeRegistry(_live_1400(), _reference()), tags, notifier, dry_run=True
    ).run()

    assert result.outcome == "tagged"
    assert tags.created == []
    assert notifier.comments == {}


def test_comment_failure_does_not_fail_run() -> None:
    tags = FakeTags()

    result = _reconciler(
        FakeRegistry(_live_1400(), _reference()), tags, FakeNotifier(fail=True)
    ).run()

    assert result.outcome == "tagged"
    assert result.pr_number is None
    assert len(tags.created) == 1


def test_no_pull_request_still_tags() -> None:
    notifier = FakeNotifier(pr_number=None)

    result = _reconciler(FakeRegistry(_live_1400(), _reference()), FakeTags(), notifier).run()

    assert result.outcome == "tagged"
    assert notifier.comments == {}
