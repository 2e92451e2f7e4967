"""
Filesystem deployment target and catalog.

DirectoryDeploymentTarget serves each artifact from <serving_root>/<name>/,
keeps the portal's template locations in <serving_root>/app-config.yaml and
tracks deployments in <serving_root>/deployments.json. Services are
"restarted" by touching a marker file per service.

LocalCatalog keeps capability records in a JSON file.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from gitorch.errors import PermanentError
from gitorch.schemas.context import generate_operation_id
from gitorch.schemas.resources import DeploymentPlan, DeploymentRecord, DeploymentResult, Repository

logger = logging.getLogger(__name__)

APP_CONFIG = "app-config.yaml"
DEPLOYMENTS_FILE = "deployments.json"
RESTART_DIR = ".restarts"


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    return json.loads(path.read_text())


def _write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True))


class DirectoryDeploymentTarget:
    """
    DeploymentTarget serving artifacts from a local directory.

    Args:
        serving_root: Directory artifacts are served from
        services: Service names restarted after each deployment
    """

    def __init__(self, serving_root: Path, services: Optional[list[str]] = None):
        self.serving_root = Path(serving_root).expanduser()
        self.services = list(services or [])

    @property
    def _registry_path(self) -> Path:
        return self.serving_root / DEPLOYMENTS_FILE

    @property
    def _config_path(self) -> Path:
        return self.serving_root / APP_CONFIG

    def _plans(self) -> dict[str, dict[str, Any]]:
        return _read_json(self._registry_path)

    def _plan(self, deployment_id: str) -> DeploymentPlan:
        data = self._plans().get(deployment_id)
        if data is None:
            raise PermanentError(f"Deployment not found: {deployment_id}")
        return DeploymentPlan(
            deployment_id=data["deployment_id"],
            artifact_name=data["artifact_name"],
            repository_url=data["repository_url"],
            commit_id=data["commit_id"],
            environment=data["environment"],
            serving_path=data["serving_path"],
            catalog_path=data["catalog_path"],
        )

    def _load_app_config(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        return yaml.safe_load(self._config_path.read_text()) or {}

    def _locations(self, app_config: dict[str, Any]) -> list[dict[str, str]]:
        return app_config.setdefault("catalog", {}).setdefault("locations", [])

    def prepare(self, artifact_name: str, repository: Repository, commit_id: str,
                files: Mapping[str, str], environment: str) -> DeploymentPlan:
        serving_path = self.serving_root / artifact_name
        plan = DeploymentPlan(
            deployment_id=f"deploy-{generate_operation_id().lower()}",
            artifact_name=artifact_name,
            repository_url=repository.url,
            commit_id=commit_id,
            environment=environment,
            serving_path=str(serving_path),
            catalog_path=str(serving_path / "catalog-info.yaml"),
            files=tuple(sorted(files.items())),
        )
        plans = self._plans()
        plans[plan.deployment_id] = {
            "deployment_id": plan.deployment_id,
            "artifact_name": plan.artifact_name,
            "repository_url": plan.repository_url,
            "commit_id": plan.commit_id,
            "environment": plan.environment,
            "serving_path": plan.serving_path,
            "catalog_path": plan.catalog_path,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        _write_json(self._registry_path, plans)
        return plan

    def copy_files(self, plan: DeploymentPlan) -> None:
        serving_path = Path(plan.serving_path)
        if serving_path.exists():
            shutil.rmtree(serving_path)
        for path, content in plan.files:
            target = serving_path / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        logger.debug(f"Copied {len(plan.files)} files to {serving_path}")

    def update_config(self, plan: DeploymentPlan) -> None:
        app_config = self._load_app_config()
        locations = self._locations(app_config)
        entry = {"type": "file", "target": plan.catalog_path}
        if entry not in locations:
            locations.append(entry)
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(yaml.safe_dump(app_config, sort_keys=False))

    def restart_services(self, plan: DeploymentPlan) -> list[str]:
        marker_dir = self.serving_root / RESTART_DIR
        marker_dir.mkdir(parents=True, exist_ok=True)
        for service in self.services:
            (marker_dir / service).write_text(plan.deployment_id)
        return list(self.services)

    def is_ready(self, plan: DeploymentPlan) -> bool:
        return Path(plan.catalog_path).exists() or Path(plan.serving_path).is_dir()

    def undeploy(self, deployment_id: str) -> None:
        plans = self._plans()
        data = plans.pop(deployment_id, None)
        if data is None:
            return
        serving_path = Path(data["serving_path"])
        if serving_path.exists():
            shutil.rmtree(serving_path)

        app_config = self._load_app_config()
        if app_config:
            locations = self._locations(app_config)
            locations[:] = [loc for loc in locations if loc.get("target") != data["catalog_path"]]
            self._config_path.write_text(yaml.safe_dump(app_config, sort_keys=False))
        _write_json(self._registry_path, plans)
        logger.info(f"Undeployed {deployment_id} from {serving_path}")

    def deployment_exists(self, deployment_id: str) -> bool:
        return deployment_id in self._plans()

    def fetch_artifact(self, deployment: DeploymentResult, path: str) -> Optional[str]:
        target = Path(deployment.serving_path) / path
        if not target.is_file():
            return None
        return target.read_text()

    def config_registered(self, deployment: DeploymentResult) -> bool:
        plan = self._plan(deployment.deployment_id)
        targets = {loc.get("target") for loc in self._locations(self._load_app_config())}
        return plan.catalog_path in targets

    def api_reachable(self) -> bool:
        return self.serving_root.is_dir()

    def dry_run(self, deployment: DeploymentResult, parameters: Mapping[str, Any]) -> bool:
        content = self.fetch_artifact(deployment, "template.yaml")
        if content is None:
            return False
        template = yaml.safe_load(content) or {}
        steps = (template.get("spec") or {}).get("steps") or []
        return bool(steps)


class LocalCatalog:
    """CapabilityCatalog persisted to a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def register(self, record: DeploymentRecord) -> str:
        records = _read_json(self.path)
        records[record.name] = record.to_dict()
        _write_json(self.path, records)
        return f"catalog:{record.name}"

    def unregister(self, name: str) -> None:
        records = _read_json(self.path)
        if records.pop(name, None) is not None:
            _write_json(self.path, records)

    def get(self, name: str) -> Optional[dict[str, Any]]:
        return _read_json(self.path).get(name)
