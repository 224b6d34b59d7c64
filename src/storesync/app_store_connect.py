from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import json
import logging
import random
import time
from types import TracebackType
from typing import cast

import httpx

from storesync.config import DEFAULT_API_BASE_URL
from storesync.observability import log_event, log_warning
from storesync.retry import RetryPolicy, run_with_retry
from storesync.token_signer import TokenSigner


LOGGER = logging.getLogger("storesync.app_store_connect")
DEFAULT_TIMEOUT_SECONDS = 30.0
_MAX_PAGES = 50


class RemoteAPIError(RuntimeError):
    """Non-2xx response from App Store Connect."""

    def __init__(self, status: int, detail: str, *, retry_after: float | None = None) -> None:
        super().__init__(f"App Store Connect API error {status}: {detail}")
        self.status = status
        self.detail = detail
        self.retry_after = retry_after


@dataclass(frozen=True)
class JsonApiDocument:
    data: list[dict[str, object]]
    included: list[dict[str, object]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: object) -> JsonApiDocument:
        payload_obj = as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected App Store Connect response: expected object")
        raw_data = payload_obj.get("data")
        if isinstance(raw_data, dict):
            raw_data = [raw_data]
        data = [obj for item in _as_list(raw_data) if (obj := as_object_dict(item)) is not None]
        included = [
            obj
            for item in _as_list(payload_obj.get("included"))
            if (obj := as_object_dict(item)) is not None
        ]
        return cls(data=data, included=included)

    def find_included(self, resource_type: str, resource_id: str | None) -> dict[str, object] | None:
        if resource_id is None:
            return None
        for item in self.included:
            if item.get("type") == resource_type and item.get("id") == resource_id:
                return item
        return None


class AppStoreConnectClient:
    """Authenticated App Store Connect transport with retry and rate-limit handling.

    Every attempt asks the signer for a token, so a retry sequence that straddles
    token expiry keeps working.
    """

    def __init__(
        self,
        signer: TokenSigner,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._signer = signer
        self._base_url = base_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._rng = rng

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> AppStoreConnectClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, object] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> object | None:
        method_upper = method.upper()
        url = endpoint if endpoint.startswith("http") else f"{self._base_url}{endpoint}"
        policy = retry_policy or self._retry_policy

        def attempt() -> object | None:
            token = self._signer.current_token()
            response = self._http.request(
                method_upper,
                url,
                params=params,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            if response.status_code == 204:
                return None
            if response.is_success:
                if not response.content:
                    return None
                return response.json()
            raise _error_from_response(response)

        def should_retry(exc: Exception) -> bool:
            if isinstance(exc, httpx.TransportError):
                return True
            return isinstance(exc, RemoteAPIError) and exc.status in policy.retryable_statuses

        def delay_hint(exc: Exception) -> float | None:
            if isinstance(exc, RemoteAPIError) and exc.status == 429:
                return exc.retry_after
            return None

        try:
            result = run_with_retry(
                attempt,
                policy=policy,
                should_retry=should_retry,
                delay_hint=delay_hint,
                describe=f"{method_upper} {endpoint}",
                sleep=self._sleep,
                rng=self._rng,
            )
        except Exception as exc:
            log_event(
                LOGGER,
                "asc_request_failed",
                method=method_upper,
                endpoint=endpoint,
                error_type=type(exc).__name__,
                status=exc.status if isinstance(exc, RemoteAPIError) else None,
            )
            raise
        log_event(LOGGER, "asc_request", method=method_upper, endpoint=endpoint)
        return result

    def get(self, endpoint: str, *, params: dict[str, str] | None = None) -> JsonApiDocument:
        return JsonApiDocument.from_payload(self.request("GET", endpoint, params=params))

    def get_all(self, endpoint: str, *, params: dict[str, str] | None = None) -> JsonApiDocument:
        """GET a collection, following ``links.next`` until the last page."""
        data: list[dict[str, object]] = []
        included: list[dict[str, object]] = []
        next_endpoint: str | None = endpoint
        next_params = params
        pages = 0
        while next_endpoint is not None and pages < _MAX_PAGES:
            payload = self.request("GET", next_endpoint, params=next_params)
            page = JsonApiDocument.from_payload(payload)
            data.extend(page.data)
            included.extend(page.included)
            pages += 1
            next_endpoint = _next_link(payload)
            # The next link already carries the full query string.
            next_params = None
        if next_endpoint is not None:
            log_warning(
                LOGGER,
                "asc_pagination_truncated",
                endpoint=endpoint,
                pages=pages,
                count=len(data),
            )
        return JsonApiDocument(data=data, included=included)


def _error_from_response(response: httpx.Response) -> RemoteAPIError:
    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
    return RemoteAPIError(
        response.status_code, _error_detail(response.text), retry_after=retry_after
    )


def _error_detail(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip() or "<empty>"
    payload_obj = as_object_dict(payload)
    if payload_obj is not None:
        errors = payload_obj.get("errors")
        if isinstance(errors, list) and errors:
            first = as_object_dict(errors[0])
            if first is not None:
                detail = first.get("detail")
                if isinstance(detail, str) and detail:
                    return detail
    return json.dumps(payload)


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return seconds


def _next_link(payload: object) -> str | None:
    payload_obj = as_object_dict(payload)
    if payload_obj is None:
        return None
    links = as_object_dict(payload_obj.get("links"))
    if links is None:
        return None
    next_link = links.get("next")
    if isinstance(next_link, str) and next_link:
        return next_link
    return None


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return cast(list[object], value)
    return []


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def attribute(resource: dict[str, object], name: str) -> object:
    attributes = as_object_dict(resource.get("attributes"))
    if attributes is None:
        return None
    return attributes.get(name)


def attribute_str(resource: dict[str, object], name: str) -> str | None:
    value = attribute(resource, name)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def related_id(resource: dict[str, object], relationship: str) -> str | None:
    relationships = as_object_dict(resource.get("relationships"))
    if relationships is None:
        return None
    relation = as_object_dict(relationships.get(relationship))
    if relation is None:
        return None
    data = as_object_dict(relation.get("data"))
    if data is None:
        return None
    resource_id = data.get("id")
    return resource_id if isinstance(resource_id, str) and resource_id else None


def resource_id(resource: dict[str, object]) -> str:
    value = resource.get("id")
    if not isinstance(value, str) or not value:
        raise RuntimeError("Unexpected App Store Connect response: resource without id")
    return value
