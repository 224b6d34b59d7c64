from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import cast
from urllib.parse import quote, urlencode

from storesync.models import PullRequestDetails, ReleaseTag, short_sha
from storesync.notifier import ChangeRequestNotifier
from storesync.observability import log_event
from storesync.shell import CommandError, run
from storesync.tag_store import TagStore


LOGGER = logging.getLogger("storesync.github_gateway")
_SQUASH_PR_PATTERN = re.compile(r"\(#(\d+)\)")
_MERGE_PR_PATTERN = re.compile(r"pull request #(\d+)", re.IGNORECASE)
_GH_TIMEOUT_SECONDS = 30


class GitHubAPIError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class GitHubGateway(TagStore, ChangeRequestNotifier):
    """GitHub REST access through the authenticated ``gh`` CLI.

    Serves both as the hosted tag store and as the pull request notifier.
    """

    owner: str
    name: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def refresh(self) -> None:
        # The hosted repository is always current.
        return None

    def tag_exists(self, tag_name: str) -> bool:
        path = f"/repos/{self.owner}/{self.name}/git/ref/tags/{quote(tag_name, safe='')}"
        exists = self._api_exists(path)
        log_event(LOGGER, "github_read", endpoint="tag_ref", tag=tag_name, found=exists)
        return exists

    def commit_exists(self, commit_sha: str) -> bool:
        return self._commit_payload(commit_sha) is not None

    def resolve_ref(self, ref: str) -> str | None:
        payload = self._commit_payload(ref)
        if payload is None:
            return None
        sha = _as_string(payload.get("sha"))
        return sha or None

    def commit_subject(self, commit_sha: str) -> str:
        payload = self._commit_payload(commit_sha)
        if payload is None:
            return ""
        return _commit_message(payload).split("\n", 1)[0].strip()

    def create_tag(self, tag: ReleaseTag) -> None:
        try:
            tag_payload = _as_object_dict(
                self._api_json(
                    "POST",
                    f"/repos/{self.owner}/{self.name}/git/tags",
                    payload={
                        "tag": tag.name,
                        "message": tag.message,
                        "object": tag.target_commit,
                        "type": "commit",
                    },
                )
            )
            tag_sha = _as_string(tag_payload.get("sha") if tag_payload else None)
            if not tag_sha:
                raise GitHubAPIError("Unexpected GitHub response: tag object without sha")
            self._api_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/git/refs",
                payload={"ref": f"refs/tags/{tag.name}", "sha": tag_sha},
            )
        except GitHubAPIError as exc:
            # A concurrent run created the ref first; the tag is what we wanted.
            if exc.status == 422 and "already exists" in str(exc).lower():
                log_event(LOGGER, "github_tag_already_exists", tag=tag.name)
                return
            log_event(
                LOGGER,
                "github_tag_create_failed",
                repo_full_name=self.full_name,
                tag=tag.name,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_tag_created",
            repo_full_name=self.full_name,
            tag=tag.name,
            commit_sha=short_sha(tag.target_commit),
        )

    def find_pull_request_for_commit(self, commit_sha: str) -> int | None:
        path = f"/repos/{self.owner}/{self.name}/commits/{commit_sha}/pulls"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubAPIError("Unexpected GitHub response: expected list for commit pulls")

        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None or not item_obj.get("merged_at"):
                continue
            if _as_string(item_obj.get("merge_commit_sha")) != commit_sha:
                continue
            base = _as_object_dict(item_obj.get("base"))
            if base is not None and _as_string(base.get("ref")) != self.default_branch:
                continue
            number = _as_int(item_obj.get("number"), field="number")
            log_event(
                LOGGER,
                "github_read",
                endpoint="commit_pulls",
                commit_sha=short_sha(commit_sha),
                pr_number=number,
            )
            return number

        # Squash and merge commits name the pull request in their message.
        payload_obj = self._commit_payload(commit_sha)
        message = _commit_message(payload_obj) if payload_obj is not None else ""
        for pattern in (_SQUASH_PR_PATTERN, _MERGE_PR_PATTERN):
            match = pattern.search(message)
            if match is not None:
                number = int(match.group(1))
                log_event(
                    LOGGER,
                    "github_read",
                    endpoint="commit_message_pr",
                    commit_sha=short_sha(commit_sha),
                    pr_number=number,
                )
                return number
        log_event(LOGGER, "github_read", endpoint="commit_pulls", commit_sha=short_sha(commit_sha))
        return None

    def get_pull_request(self, pr_number: int) -> PullRequestDetails:
        payload_obj = _as_object_dict(
            self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        )
        if payload_obj is None:
            raise GitHubAPIError("Unexpected GitHub response: expected object for pull request")
        details = PullRequestDetails(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=details.number)
        return details

    def list_comment_bodies(self, pr_number: int) -> list[str]:
        bodies: list[str] = []
        page = 1
        while True:
            query = urlencode({"per_page": 100, "page": page})
            path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubAPIError("Unexpected GitHub response: expected list of comments")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    bodies.append(_as_string(item_obj.get("body")))
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER, "github_read", endpoint="issue_comments", pr_number=pr_number, count=len(bodies)
        )
        return bodies

    def post_comment(self, pr_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise

    def _commit_payload(self, ref: str) -> dict[str, object] | None:
        path = f"/repos/{self.owner}/{self.name}/commits/{quote(ref, safe='')}"
        try:
            payload = self._api_json("GET", path)
        except GitHubAPIError as exc:
            if exc.status in {404, 422}:
                return None
            raise
        return _as_object_dict(payload)

    def _api_exists(self, path: str) -> bool:
        try:
            self._api_json("GET", path)
        except GitHubAPIError as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        # gh exits non-zero on HTTP errors but still prints the response.
        try:
            raw = run(cmd, input_text=stdin_payload, check=False, timeout=_GH_TIMEOUT_SECONDS)
        except CommandError as exc:
            raise GitHubAPIError(f"GitHub API {method_upper} {path} failed: {exc}") from exc
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubAPIError(f"GitHub API {method_upper} {path} failed: {exc}") from exc

        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            raise GitHubAPIError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}",
                status=status_code,
            )
        if not body.strip():
            return None
        return json.loads(body)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index
            break

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _commit_message(payload: dict[str, object]) -> str:
    commit = _as_object_dict(payload.get("commit"))
    if commit is None:
        return ""
    return _as_string(commit.get("message"))


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubAPIError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubAPIError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubAPIError(f"Unexpected GitHub response type for {field}")
