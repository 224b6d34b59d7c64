from __future__ import annotations

from collections.abc import Iterator
import logging
from typing import Final

from storesync.app_store_connect import (
    AppStoreConnectClient,
    JsonApiDocument,
    as_object_dict,
    attribute,
    attribute_str,
    related_id,
    resource_id,
)
from storesync.config import AppStoreConfig
from storesync.models import (
    NO_BUILD_NUMBER,
    READY_FOR_SALE,
    REJECTED_STATES,
    REVIEW_STATES,
    UNKNOWN,
    AppVersionRecord,
    BuildRecord,
    CommitReference,
    LiveBuild,
    VersionStatus,
)
from storesync.observability import log_event


LOGGER = logging.getLogger("storesync.registry_query")

# Xcode Cloud has reported the commit under each of these keys; first non-empty wins.
SOURCE_COMMIT_FIELDS: Final[tuple[str, ...]] = ("commitSha", "hash", "canonicalHash", "id")
BUILD_RUN_SCAN_LIMIT: Final[int] = 200
BETA_BUILD_SCAN_LIMIT: Final[int] = 50


class AppNotFoundError(RuntimeError):
    pass


class BuildRegistryQuery:
    def __init__(self, client: AppStoreConnectClient, app: AppStoreConfig) -> None:
        self._client = client
        self._app = app
        self._app_id: str | None = app.app_id

    def app_id(self) -> str:
        if self._app_id is not None:
            return self._app_id
        document = self._client.get("/apps", params={"filter[bundleId]": self._app.bundle_id})
        if not document.data:
            raise AppNotFoundError(f"App not found: {self._app.bundle_id}")
        # Several apps can share a bundle id; prefer the exact configured name.
        selected = next(
            (app for app in document.data if attribute(app, "name") == self._app.app_name),
            document.data[0],
        )
        self._app_id = resource_id(selected)
        log_event(
            LOGGER,
            "asc_app_resolved",
            bundle_id=self._app.bundle_id,
            app_id=self._app_id,
            candidates=len(document.data),
        )
        return self._app_id

    def list_versions(self) -> list[AppVersionRecord]:
        document = self._client.get_all(
            f"/apps/{self.app_id()}/appStoreVersions", params={"include": "build"}
        )
        versions: list[AppVersionRecord] = []
        for item in document.data:
            build_id = related_id(item, "build")
            build = document.find_included("builds", build_id)
            versions.append(
                AppVersionRecord(
                    version_id=resource_id(item),
                    version_string=attribute_str(item, "versionString") or "",
                    state=attribute_str(item, "appStoreState") or UNKNOWN,
                    build_id=build_id,
                    build_number=attribute_str(build, "version") if build is not None else None,
                )
            )
        log_event(LOGGER, "asc_read", endpoint="app_store_versions", count=len(versions))
        return versions

    def live_production_build(self) -> LiveBuild:
        # First match in response order; simultaneous live versions are not ranked.
        live = _first_in_states(self.list_versions(), frozenset({READY_FOR_SALE}))
        if live is None:
            return LiveBuild(live=False, build_number=NO_BUILD_NUMBER)
        return LiveBuild(
            live=True,
            version=live.version_string,
            build_number=live.build_number or NO_BUILD_NUMBER,
        )

    def build_in_review(self) -> VersionStatus | None:
        return _version_status(_first_in_states(self.list_versions(), REVIEW_STATES))

    def rejected_version(self) -> VersionStatus | None:
        return _version_status(_first_in_states(self.list_versions(), REJECTED_STATES))

    def eligible_beta_builds(self) -> Iterator[BuildRecord]:
        """Yield VALID, unexpired builds newest-first, skipping the live and in-review builds."""
        document = self._client.get(
            "/builds",
            params={
                "filter[app]": self.app_id(),
                "sort": "-uploadedDate",
                "limit": str(BETA_BUILD_SCAN_LIMIT),
                "include": "preReleaseVersion,buildBetaDetail",
            },
        )
        versions = self.list_versions()
        live = _first_in_states(versions, frozenset({READY_FOR_SALE}))
        in_review = _first_in_states(versions, REVIEW_STATES)
        excluded_ids = {
            version.build_id
            for version in (live, in_review)
            if version is not None and version.build_id is not None
        }

        for item in document.data:
            build = _build_record(item, document)
            if build.processing_state != "VALID" or build.expired:
                continue
            if build.build_id in excluded_ids:
                continue
            yield build

    def latest_eligible_beta_build(self) -> BuildRecord | None:
        build = next(self.eligible_beta_builds(), None)
        log_event(
            LOGGER,
            "asc_read",
            endpoint="latest_eligible_beta_build",
            found=build is not None,
            build_number=build.build_number if build is not None else None,
        )
        return build

    def build_by_number(self, build_number: str) -> BuildRecord | None:
        document = self._client.get(
            "/builds",
            params={
                "filter[app]": self.app_id(),
                "filter[version]": build_number,
                "include": "preReleaseVersion,buildBetaDetail",
                "limit": "1",
            },
        )
        if not document.data:
            return None
        return _build_record(document.data[0], document)

    def commit_for_build(self, build_number: str) -> CommitReference | None:
        """Scan every CI workflow's recent runs for the run that produced ``build_number``."""
        target = str(build_number)
        products = self._client.get_all("/ciProducts")
        for product in products.data:
            workflows = self._client.get_all(f"/ciProducts/{resource_id(product)}/workflows")
            for workflow in workflows.data:
                workflow_id = resource_id(workflow)
                runs = self._client.get(
                    f"/ciWorkflows/{workflow_id}/buildRuns",
                    params={
                        "limit": str(BUILD_RUN_SCAN_LIMIT),
                        "sort": "-number",
                        "fields[ciBuildRuns]": (
                            "number,sourceCommit,executionProgress,completionStatus"
                        ),
                    },
                )
                for run in runs.data:
                    if attribute_str(run, "number") != target:
                        continue
                    reference = CommitReference(
                        build_number=target,
                        commit_ref=extract_commit_ref(attribute(run, "sourceCommit")),
                        workflow_id=workflow_id,
                        workflow_name=attribute_str(workflow, "name"),
                    )
                    log_event(
                        LOGGER,
                        "asc_commit_for_build",
                        build_number=target,
                        workflow_id=workflow_id,
                        commit_ref=reference.commit_ref,
                    )
                    return reference
        log_event(LOGGER, "asc_commit_for_build_missing", build_number=target)
        return None


def extract_commit_ref(source_commit: object) -> str | None:
    if isinstance(source_commit, str):
        return source_commit.strip() or None
    source_obj = as_object_dict(source_commit)
    if source_obj is None:
        return None
    for key in SOURCE_COMMIT_FIELDS:
        value = source_obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_in_states(
    versions: list[AppVersionRecord], states: frozenset[str]
) -> AppVersionRecord | None:
    return next((version for version in versions if version.state in states), None)


def _version_status(version: AppVersionRecord | None) -> VersionStatus | None:
    if version is None:
        return None
    return VersionStatus(
        version_id=version.version_id,
        version=version.version_string,
        state=version.state,
        build_number=version.build_number or UNKNOWN,
    )


def _build_record(item: dict[str, object], document: JsonApiDocument) -> BuildRecord:
    pre_release = document.find_included(
        "preReleaseVersions", related_id(item, "preReleaseVersion")
    )
    beta_detail = document.find_included("buildBetaDetails", related_id(item, "buildBetaDetail"))
    return BuildRecord(
        build_id=resource_id(item),
        build_number=attribute_str(item, "version") or "",
        version=(attribute_str(pre_release, "version") if pre_release else None) or UNKNOWN,
        processing_state=attribute_str(item, "processingState") or UNKNOWN,
        expired=attribute(item, "expired") is True,
        beta_state=(
            attribute_str(beta_detail, "externalBuildState") if beta_detail else None
        )
        or UNKNOWN,
    )
