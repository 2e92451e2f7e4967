"""
HTTP client for the developer portal.

Implements both DeploymentTarget and CapabilityCatalog against the portal
REST API. HTTP failures are mapped onto the client failure contract:

- timeouts, connection errors, 429 and 5xx -> TransientError
- 401 / 403 -> PermissionError
- other 4xx -> PermanentError
"""

import logging
from typing import Any, Mapping, Optional

import requests

from gitorch.errors import PermanentError, TransientError
from gitorch.schemas.resources import DeploymentPlan, DeploymentRecord, DeploymentResult, Repository
from gitorch.utils import sanitize_error_message

logger = logging.getLogger(__name__)

HEALTH_ENDPOINTS = ("/api/health", "/api/catalog/health", "/api/scaffolder/health")


class PortalClient:
    """
    Portal API client.

    Args:
        base_url: Portal root URL
        token: Bearer token (optional for unauthenticated portals)
        timeout: Request timeout in seconds
        services: Services restarted after a deployment
        session: requests.Session to use (created if None)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        services: Optional[list[str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.services = list(services or [])
        self.session = session or requests.Session()
        self.session.headers["Accept"] = "application/json"
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, allow_404: bool = False, **kwargs: Any) -> Optional[requests.Response]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"{method} {path} failed: {sanitize_error_message(e)}") from e

        status = response.status_code
        if allow_404 and status == 404:
            return None
        if status in (401, 403):
            raise PermissionError(f"{method} {path} denied with HTTP {status}")
        if status == 429 or status >= 500:
            raise TransientError(f"{method} {path} returned HTTP {status}")
        if status >= 400:
            raise PermanentError(
                f"{method} {path} returned HTTP {status}: {sanitize_error_message(response.text, 200)}"
            )
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._request(method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()

    # DeploymentTarget ------------------------------------------------------

    def prepare(self, artifact_name: str, repository: Repository, commit_id: str,
                files: Mapping[str, str], environment: str) -> DeploymentPlan:
        body = self._json("POST", "/api/deployments", json={
            "artifact_name": artifact_name,
            "repository_url": repository.url,
            "commit_id": commit_id,
            "environment": environment,
        })
        serving_path = body.get("serving_path", f"/templates/{artifact_name}")
        return DeploymentPlan(
            deployment_id=body["deployment_id"],
            artifact_name=artifact_name,
            repository_url=repository.url,
            commit_id=commit_id,
            environment=environment,
            serving_path=serving_path,
            catalog_path=body.get("catalog_path", f"{serving_path}/catalog-info.yaml"),
            files=tuple(sorted(files.items())),
        )

    def copy_files(self, plan: DeploymentPlan) -> None:
        self._request("PUT", f"/api/deployments/{plan.deployment_id}", json={"files": plan.file_map})

    def update_config(self, plan: DeploymentPlan) -> None:
        self._request("POST", "/api/catalog/locations", json={"type": "url", "target": plan.catalog_path})

    def restart_services(self, plan: DeploymentPlan) -> list[str]:
        body = self._json("POST", "/api/admin/restart", json={
            "deployment_id": plan.deployment_id,
            "services": self.services,
        })
        return list(body.get("restarted", self.services))

    def is_ready(self, plan: DeploymentPlan) -> bool:
        for path in HEALTH_ENDPOINTS:
            try:
                self._request("GET", path)
            except TransientError as e:
                logger.debug(f"Portal not ready: {e}")
                return False
        return True

    def undeploy(self, deployment_id: str) -> None:
        self._request("DELETE", f"/api/deployments/{deployment_id}", allow_404=True)

    def deployment_exists(self, deployment_id: str) -> bool:
        return self._request("GET", f"/api/deployments/{deployment_id}", allow_404=True) is not None

    def fetch_artifact(self, deployment: DeploymentResult, path: str) -> Optional[str]:
        response = self._request("GET", f"/api/deployments/{deployment.deployment_id}/files/{path}", allow_404=True)
        if response is None:
            return None
        return response.text

    def config_registered(self, deployment: DeploymentResult) -> bool:
        entities = self._json("GET", "/api/catalog/entities", params={
            "filter": f"kind=template,metadata.name={deployment.artifact_name}",
        })
        return bool(entities)

    def api_reachable(self) -> bool:
        try:
            self._request("GET", "/api/scaffolder/v2/templates")
        except TransientError as e:
            logger.warning(f"Scaffolder API unreachable: {e}")
            return False
        return True

    def dry_run(self, deployment: DeploymentResult, parameters: Mapping[str, Any]) -> bool:
        body = self._json("POST", "/api/scaffolder/v2/dry-run", json={
            "templateRef": f"template:default/{deployment.artifact_name}",
            "values": dict(parameters),
        })
        return not body.get("errors")

    # CapabilityCatalog -----------------------------------------------------

    def register(self, record: DeploymentRecord) -> str:
        body = self._json("POST", "/api/capabilities", json=record.to_dict())
        return body.get("id", f"catalog:{record.name}")

    def unregister(self, name: str) -> None:
        self._request("DELETE", f"/api/capabilities/{name}", allow_404=True)
