"""Client for the software composition analysis (Dependency-Track) REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from scan_analyst.config import DependencyGraphConfig

logger = logging.getLogger(__name__)


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Project(_ApiModel):
    uuid: str
    name: str
    version: str | None = None
    description: str | None = None
    active: bool | None = None
    last_bom_import: int | str | None = None
    last_bom_import_format: str | None = None


class ProjectMetrics(_ApiModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unassigned: int = 0
    vulnerabilities: int = 0
    vulnerable_components: int = 0
    components: int = 0
    suppressed: int = 0
    findings_total: int = 0
    findings_audited: int = 0
    findings_unaudited: int = 0
    policy_violations_total: int = 0
    policy_violations_fail: int = 0
    policy_violations_warn: int = 0
    policy_violations_info: int = 0
    last_measurement: int | None = None


class BomUpload(_ApiModel):
    uuid: str | None = None
    project: str | None = None
    bom_format: str | None = None
    spec_version: str | None = None
    imported: int | str | None = None
    imported_by: str | None = None


_BOM_LIST = TypeAdapter(list[BomUpload])


class DependencyGraphAdapter:
    """Resolves projects to vulnerability metrics and SBOM upload history.

    Lookups return None (or an empty list) when the service is unreachable,
    slow, or answers with an error status.
    """

    def __init__(
        self,
        config: DependencyGraphConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or DependencyGraphConfig()
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["X-Api-Key"] = self.config.api_key
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout_seconds),
        )

    def close(self) -> None:
        self._client.close()

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any | None:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Dependency service call %s failed: %s", path, exc)
            return None

    def lookup_project(self, name: str, version: str | None = None) -> Project | None:
        params = {"name": name}
        if version:
            params["version"] = version
        payload = self._get_json("/api/v1/project/lookup", params)
        project = self._validate(Project, payload)
        if project is not None:
            logger.info("Resolved project %s:%s to %s", name, version or "-", project.uuid)
        return project

    def get_metrics(self, project_uuid: str) -> ProjectMetrics | None:
        payload = self._get_json(f"/api/v1/metrics/project/{project_uuid}/current")
        return self._validate(ProjectMetrics, payload)

    def get_bom_history(self, project_uuid: str) -> list[BomUpload]:
        payload = self._get_json("/api/v1/bom", {"project": project_uuid})
        if payload is None:
            return []
        try:
            return _BOM_LIST.validate_python(payload)
        except ValidationError as exc:
            logger.warning("Unexpected BOM history payload for %s: %s", project_uuid, exc)
            return []

    @staticmethod
    def _validate(model: type[_ApiModel], payload: Any) -> Any | None:
        if not payload:
            return None
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Unexpected %s payload: %s", model.__name__, exc)
            return None
