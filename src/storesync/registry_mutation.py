from __future__ import annotations

import logging

from storesync.app_store_connect import (
    AppStoreConnectClient,
    JsonApiDocument,
    RemoteAPIError,
    attribute_str,
    resource_id,
)
from storesync.models import EDITABLE_STATES, PREPARE_FOR_SUBMISSION, VersionHandle
from storesync.observability import log_event
from storesync.registry_query import BuildRegistryQuery


LOGGER = logging.getLogger("storesync.registry_mutation")
DEFAULT_LOCALE = "en-US"


class NoSubmissionFound(RuntimeError):
    pass


class VersionNotEditable(RuntimeError):
    pass


class BuildRegistryMutation:
    def __init__(self, client: AppStoreConnectClient, query: BuildRegistryQuery) -> None:
        self._client = client
        self._query = query

    def get_or_create_version(self, version_string: str) -> VersionHandle:
        for version in self._query.list_versions():
            if version.version_string != version_string:
                continue
            if version.state not in EDITABLE_STATES:
                raise VersionNotEditable(
                    f"Version {version_string} is {version.state} and cannot take a new build"
                )
            log_event(
                LOGGER,
                "asc_version_reused",
                version=version_string,
                version_id=version.version_id,
                state=version.state,
            )
            return VersionHandle(version_id=version.version_id, state=version.state, created=False)

        payload = self._client.request(
            "POST",
            "/appStoreVersions",
            payload={
                "data": {
                    "type": "appStoreVersions",
                    "attributes": {"platform": "IOS", "versionString": version_string},
                    "relationships": {
                        "app": {"data": {"type": "apps", "id": self._query.app_id()}}
                    },
                }
            },
        )
        document = JsonApiDocument.from_payload(payload)
        if not document.data:
            raise RuntimeError("Unexpected App Store Connect response: version not created")
        created = document.data[0]
        handle = VersionHandle(
            version_id=resource_id(created),
            state=attribute_str(created, "appStoreState") or PREPARE_FOR_SUBMISSION,
            created=True,
        )
        log_event(
            LOGGER,
            "asc_version_created",
            version=version_string,
            version_id=handle.version_id,
        )
        return handle

    def select_build(self, version_id: str, build_id: str) -> None:
        self._client.request(
            "PATCH",
            f"/appStoreVersions/{version_id}/relationships/build",
            payload={"data": {"type": "builds", "id": build_id}},
        )
        log_event(LOGGER, "asc_build_selected", version_id=version_id, build_id=build_id)

    def set_release_notes(
        self, version_id: str, notes: str, locale: str = DEFAULT_LOCALE
    ) -> None:
        localizations = self._client.get_all(
            f"/appStoreVersions/{version_id}/appStoreVersionLocalizations"
        )
        existing = next(
            (item for item in localizations.data if attribute_str(item, "locale") == locale),
            None,
        )
        if existing is not None:
            localization_id = resource_id(existing)
            self._client.request(
                "PATCH",
                f"/appStoreVersionLocalizations/{localization_id}",
                payload={
                    "data": {
                        "type": "appStoreVersionLocalizations",
                        "id": localization_id,
                        "attributes": {"whatsNew": notes},
                    }
                },
            )
            log_event(
                LOGGER,
                "asc_release_notes_updated",
                version_id=version_id,
                locale=locale,
            )
            return

        self._client.request(
            "POST",
            "/appStoreVersionLocalizations",
            payload={
                "data": {
                    "type": "appStoreVersionLocalizations",
                    "attributes": {"locale": locale, "whatsNew": notes},
                    "relationships": {
                        "appStoreVersion": {
                            "data": {"type": "appStoreVersions", "id": version_id}
                        }
                    },
                }
            },
        )
        log_event(LOGGER, "asc_release_notes_created", version_id=version_id, locale=locale)

    def submit_for_review(self, version_id: str) -> None:
        self._client.request(
            "POST",
            "/appStoreVersionSubmissions",
            payload={
                "data": {
                    "type": "appStoreVersionSubmissions",
                    "relationships": {
                        "appStoreVersion": {
                            "data": {"type": "appStoreVersions", "id": version_id}
                        }
                    },
                }
            },
        )
        log_event(LOGGER, "asc_review_submitted", version_id=version_id)

    def cancel_review(self, version_id: str) -> None:
        try:
            submission = self._client.get(
                f"/appStoreVersions/{version_id}/appStoreVersionSubmission"
            )
        except RemoteAPIError as exc:
            if exc.status == 404:
                raise NoSubmissionFound(
                    f"No review submission found for version {version_id}"
                ) from exc
            raise
        if not submission.data:
            raise NoSubmissionFound(f"No review submission found for version {version_id}")
        submission_id = resource_id(submission.data[0])
        self._client.request("DELETE", f"/appStoreVersionSubmissions/{submission_id}")
        log_event(
            LOGGER,
            "review_cancelled",
            version_id=version_id,
            submission_id=submission_id,
        )
