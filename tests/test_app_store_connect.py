from __future__ import annotations

from collections.abc import Callable
import json

import httpx
import pytest

from storesync import app_store_connect
from storesync.app_store_connect import (
    AppStoreConnectClient,
    JsonApiDocument,
    RemoteAPIError,
    _error_detail,
    _parse_retry_after,
    attribute_str,
    related_id,
    resource_id,
)
from storesync.retry import NO_RETRY


BASE_URL = "https://asc.test/v1"


class FakeSigner:
    def __init__(self) -> None:
        self.calls = 0

    def current_token(self) -> str:
        self.calls += 1
        return f"token-{self.calls}"


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    signer: FakeSigner | None = None,
    sleeps: list[float] | None = None,
    rng: Callable[[], float] = lambda: 0.5,
) -> AppStoreConnectClient:
    recorded = sleeps if sleeps is not None else []
    return AppStoreConnectClient(
        signer or FakeSigner(),  # type: ignore[arg-type]
        base_url=BASE_URL,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=recorded.append,
        rng=rng,
    )


def test_request_retries_three_503s_then_returns_payload() -> None:
    responses = [
        httpx.Response(503, text="unavailable"),
        httpx.Response(503, text="unavailable"),
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, json={"data": {"id": "1", "type": "apps"}}),
    ]
    seen_auth: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_auth.append(request.headers["Authorization"])
        return responses.pop(0)

    sleeps: list[float] = []
    signer = FakeSigner()
    client = _client(handler, signer=signer, sleeps=sleeps, rng=lambda: 0.999)

    payload = client.request("GET", "/apps/1")

    assert payload == {"data": {"id": "1", "type": "apps"}}
    assert len(sleeps) == 3
    assert 1.0 <= sleeps[0] <= 1.3
    assert 2.0 <= sleeps[1] <= 2.6
    assert 4.0 <= sleeps[2] <= 5.2
    # Every attempt is signed with a freshly requested token.
    assert seen_auth == ["Bearer token-1", "Bearer token-2", "Bearer token-3", "Bearer token-4"]
    assert signer.calls == 4


def test_request_raises_last_error_when_retries_exhausted() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        calls["count"] += 1
        return httpx.Response(502, json={"errors": [{"detail": "bad gateway"}]})

    client = _client(handler)

    with pytest.raises(RemoteAPIError) as excinfo:
        client.request("GET", "/apps")

    assert excinfo.value.status == 502
    assert excinfo.value.detail == "bad gateway"
    assert calls["count"] == 4


def test_request_honors_retry_after_on_429() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "7"}, text=""),
        httpx.Response(200, json={"data": []}),
    ]
    sleeps: list[float] = []
    client = _client(lambda request: responses.pop(0), sleeps=sleeps)

    assert client.request("GET", "/builds") == {"data": []}
    assert sleeps == [7.0]


def test_request_falls_back_to_backoff_without_retry_after() -> None:
    responses = [httpx.Response(429, text=""), httpx.Response(200, json={"data": []})]
    sleeps: list[float] = []
    client = _client(lambda request: responses.pop(0), sleeps=sleeps, rng=lambda: 0.0)

    client.request("GET", "/builds")

    assert sleeps == [1.0]


def test_request_retries_transport_errors() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    sleeps: list[float] = []
    client = _client(handler, sleeps=sleeps)

    assert client.request("GET", "/apps") == {"ok": True}
    assert len(sleeps) == 1


def test_request_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        calls["count"] += 1
        return httpx.Response(409, json={"errors": [{"detail": "already submitted"}]})

    client = _client(handler)

    with pytest.raises(RemoteAPIError, match="409: already submitted"):
        client.request("POST", "/appStoreVersionSubmissions", payload={"data": {}})
    assert calls["count"] == 1


def test_request_returns_none_for_204_and_sends_json_body() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(204)

    client = _client(handler)

    result = client.request("PATCH", "/appStoreVersions/v1/relationships/build", payload={"a": 1})

    assert result is None
    assert seen == {
        "method": "PATCH",
        "url": f"{BASE_URL}/appStoreVersions/v1/relationships/build",
        "body": {"a": 1},
    }


def test_request_policy_override_disables_retry() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        calls["count"] += 1
        return httpx.Response(500, text="boom")

    client = _client(handler)

    with pytest.raises(RemoteAPIError, match="500: boom"):
        client.request("GET", "/apps", retry_policy=NO_RETRY)
    assert calls["count"] == 1


def test_get_all_follows_next_links() -> None:
    seen_urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_urls.append(str(request.url))
        if request.url.params.get("cursor") == "2":
            return httpx.Response(
                200,
                json={
                    "data": [{"type": "ciProducts", "id": "p2"}],
                    "included": [{"type": "apps", "id": "a2"}],
                    "links": {"self": "x"},
                },
            )
        return httpx.Response(
            200,
            json={
                "data": [{"type": "ciProducts", "id": "p1"}],
                "included": [{"type": "apps", "id": "a1"}],
                "links": {"next": f"{BASE_URL}/ciProducts?cursor=2"},
            },
        )

    client = _client(handler)

    document = client.get_all("/ciProducts", params={"limit": "1"})

    assert [item["id"] for item in document.data] == ["p1", "p2"]
    assert [item["id"] for item in document.included] == ["a1", "a2"]
    assert seen_urls == [f"{BASE_URL}/ciProducts?limit=1", f"{BASE_URL}/ciProducts?cursor=2"]


def test_json_api_document_wraps_single_resource_and_finds_included() -> None:
    document = JsonApiDocument.from_payload(
        {
            "data": {
                "type": "appStoreVersions",
                "id": "v1",
                "attributes": {"versionString": "1.4"},
                "relationships": {"build": {"data": {"type": "builds", "id": "b1"}}},
            },
            "included": [{"type": "builds", "id": "b1", "attributes": {"version": 1400}}],
        }
    )

    version = document.data[0]
    assert resource_id(version) == "v1"
    assert attribute_str(version, "versionString") == "1.4"
    build = document.find_included("builds", related_id(version, "build"))
    assert build is not None
    assert attribute_str(build, "version") == "1400"
    assert document.find_included("builds", None) is None
    assert JsonApiDocument.from_payload({"data": None}).data == []


def test_json_api_document_rejects_non_object_payload() -> None:
    with pytest.raises(RuntimeError, match="expected object"):
        JsonApiDocument.from_payload(None)


def test_error_detail_prefers_structured_errors() -> None:
    assert _error_detail('{"errors": [{"detail": "nope"}]}') == "nope"
    assert _error_detail('{"message": "x"}') == '{"message": "x"}'
    assert _error_detail("plain text") == "plain text"
    assert _error_detail("") == "<empty>"


def test_parse_retry_after() -> None:
    assert _parse_retry_after("3") == 3.0
    assert _parse_retry_after(" 1.5 ") == 1.5
    assert _parse_retry_after("0") is None
    assert _parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert _parse_retry_after(None) is None


def test_get_all_warns_when_page_limit_cuts_results(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[tuple[str, dict[str, object]]] = []
    monkeypatch.setattr(app_store_connect, "_MAX_PAGES", 2)
    monkeypatch.setattr(
        app_store_connect,
        "log_warning",
        lambda logger, event, **fields: warnings.append((event, fields)),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = int(request.url.params.get("cursor", "0"))
        return httpx.Response(
            200,
            json={
                "data": [{"type": "builds", "id": f"b{cursor}"}],
                "links": {"next": f"{BASE_URL}/builds?cursor={cursor + 1}"},
            },
        )

    document = _client(handler).get_all("/builds")

    assert [item["id"] for item in document.data] == ["b0", "b1"]
    assert warnings == [
        ("asc_pagination_truncated", {"endpoint": "/builds", "pages": 2, "count": 2})
    ]


def test_get_all_does_not_warn_when_last_page_is_reached(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[str] = []
    monkeypatch.setattr(
        app_store_connect, "log_warning", lambda logger, event, **fields: warnings.append(event)
    )

    document = _client(lambda request: httpx.Response(200, json={"data": []})).get_all("/builds")

    assert document.data == []
    assert warnings == []
