"""Tests for the directory deployment target and the JSON catalog."""

from datetime import datetime, timezone

import pytest
import yaml

from gitorch.clients.local_deploy import APP_CONFIG, DirectoryDeploymentTarget, LocalCatalog
from gitorch.errors import PermanentError
from gitorch.schemas.resources import DeploymentRecord, DeploymentResult, Repository


@pytest.fixture
def target(tmp_path):
    return DirectoryDeploymentTarget(tmp_path / "serving", services=["portal-backend"])


@pytest.fixture
def repo():
    return Repository(id="platform-team/my-service", name="my-service", url="file:///repos/my-service.git",
                      owner="platform-team")


def deploy(target, repo, files):
    plan = target.prepare("my-service", repo, "abc123", files, "production")
    target.copy_files(plan)
    target.update_config(plan)
    target.restart_services(plan)
    result = DeploymentResult(
        deployment_id=plan.deployment_id,
        success=True,
        timestamp=datetime.now(timezone.utc),
        artifact_name=plan.artifact_name,
        serving_path=plan.serving_path,
    )
    return plan, result


class TestDirectoryDeploymentTarget:
    def test_deploy_serves_files(self, target, repo, bundle_files, tmp_path):
        plan, result = deploy(target, repo, bundle_files)

        served = tmp_path / "serving" / "my-service"
        assert (served / "skeleton" / "index.js").read_text() == bundle_files["skeleton/index.js"]
        assert plan.deployment_id.startswith("deploy-")
        assert target.deployment_exists(plan.deployment_id)
        assert target.is_ready(plan)
        assert (tmp_path / "serving" / ".restarts" / "portal-backend").read_text() == plan.deployment_id

    def test_config_lists_catalog_location_once(self, target, repo, bundle_files, tmp_path):
        plan, result = deploy(target, repo, bundle_files)
        target.update_config(plan)

        app_config = yaml.safe_load((tmp_path / "serving" / APP_CONFIG).read_text())
        assert app_config["catalog"]["locations"] == [{"type": "file", "target": plan.catalog_path}]
        assert target.config_registered(result)

    def test_verification_probes(self, target, repo, bundle_files):
        _, result = deploy(target, repo, bundle_files)
        assert target.fetch_artifact(result, "README.md") == bundle_files["README.md"]
        assert target.fetch_artifact(result, "missing.txt") is None
        assert target.api_reachable()
        assert target.dry_run(result, {"name": "probe"})

    def test_dry_run_needs_steps(self, target, repo, template):
        del template["spec"]["steps"]
        _, result = deploy(target, repo, {"template.yaml": yaml.safe_dump(template)})
        assert target.dry_run(result, {}) is False

    def test_undeploy_removes_everything(self, target, repo, bundle_files, tmp_path):
        plan, result = deploy(target, repo, bundle_files)

        target.undeploy(plan.deployment_id)

        assert not (tmp_path / "serving" / "my-service").exists()
        assert not target.deployment_exists(plan.deployment_id)
        app_config = yaml.safe_load((tmp_path / "serving" / APP_CONFIG).read_text())
        assert app_config["catalog"]["locations"] == []

    def test_undeploy_unknown_is_noop(self, target):
        target.undeploy("deploy-missing")

    def test_config_check_for_unknown_deployment(self, target, repo, bundle_files):
        plan, result = deploy(target, repo, bundle_files)
        target.undeploy(plan.deployment_id)
        with pytest.raises(PermanentError):
            target.config_registered(result)


class TestLocalCatalog:
    def test_register_and_unregister(self, tmp_path):
        catalog = LocalCatalog(tmp_path / "catalog.json")
        record = DeploymentRecord(
            name="my-service",
            owner="platform-team",
            description="Node.js service template",
            version="1.2.0",
            repository_url="file:///repos/my-service.git",
            deployment_id="deploy-1",
            environment="production",
            registered_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
            metadata={"type": "service"},
        )

        assert catalog.register(record) == "catalog:my-service"
        assert catalog.get("my-service")["version"] == "1.2.0"

        catalog.unregister("my-service")
        assert catalog.get("my-service") is None
