import copy

import pytest
import yaml

from gitorch.bundle import ArtifactBundle, ArtifactFile
from gitorch.clients.base import Clients
from gitorch.clients.memory import (
    InMemoryCatalog,
    InMemoryDeploymentTarget,
    InMemoryHost,
    InMemoryValidationProvider,
    RecordingNotifier,
)
from gitorch.config import GitorchConfig
from gitorch.orchestrator import Orchestrator


TEMPLATE = {
    "apiVersion": "scaffolder.backstage.io/v1beta3",
    "kind": "Template",
    "metadata": {"name": "my-service", "title": "My Service", "description": "Node.js service template"},
    "spec": {
        "owner": "platform-team",
        "type": "service",
        "parameters": [
            {
                "title": "Basic information",
                "required": ["name"],
                "properties": {"name": {"title": "Name", "type": "string"}},
            }
        ],
        "steps": [
            {"id": "fetch", "name": "Fetch skeleton", "action": "fetch:template", "input": {"url": "./skeleton"}},
            {"id": "publish", "name": "Publish", "action": "publish:github", "input": {"repoUrl": "${{ parameters.repoUrl }}"}},
        ],
    },
}

CATALOG_INFO = {
    "apiVersion": "backstage.io/v1alpha1",
    "kind": "Component",
    "metadata": {"name": "my-service"},
    "spec": {"type": "service", "owner": "platform-team", "lifecycle": "experimental"},
}

BUNDLE_FILES = {
    "template.yaml": yaml.safe_dump(TEMPLATE, sort_keys=False),
    "catalog-info.yaml": yaml.safe_dump(CATALOG_INFO, sort_keys=False),
    "README.md": "# My Service\n\nScaffolds a Node.js service.\n",
    "skeleton/index.js": "console.log('hello');\n",
}


@pytest.fixture
def bundle_files():
    return dict(BUNDLE_FILES)


@pytest.fixture
def template():
    return copy.deepcopy(TEMPLATE)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.config/gitorch."""
    home = tmp_path / "gitorch_home"
    monkeypatch.setenv("GITORCH_HOME", str(home))
    return home


@pytest.fixture
def test_config(tmp_path):
    """Config with short intervals and no retry delay; tests inject a no-op sleep."""
    return GitorchConfig.from_dict({
        "git": {"repositories_root": str(tmp_path / "repos")},
        "validation": {"poll_interval_seconds": 0.01, "poll_timeout_seconds": 30},
        "deploy": {
            "serving_root": str(tmp_path / "serving"),
            "readiness_interval_seconds": 0.01,
            "readiness_timeout_seconds": 5,
        },
        "error_handling": {"max_retries": 3, "retry_delay_seconds": 0},
    })


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clients(notifier):
    return Clients(
        host=InMemoryHost(),
        validation=InMemoryValidationProvider(),
        deployment=InMemoryDeploymentTarget(),
        catalog=InMemoryCatalog(),
        notifier=notifier,
    )


@pytest.fixture
def sample_bundle():
    return ArtifactBundle(
        name="My Service",
        owner="platform-team",
        description="Node.js service template",
        version="1.2.0",
        files=tuple(ArtifactFile(path, content) for path, content in BUNDLE_FILES.items()),
        metadata={"type": "service"},
    )


@pytest.fixture
def bundle_dir(tmp_path):
    """The sample bundle written out as a bundle directory."""
    root = tmp_path / "my-service"
    for path, content in BUNDLE_FILES.items():
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    (root / "bundle.yaml").write_text(yaml.safe_dump({
        "name": "My Service",
        "owner": "platform-team",
        "description": "Node.js service template",
        "version": "1.2.0",
        "type": "service",
    }))
    return root


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def orchestrator(clients, test_config, sleeps):
    return Orchestrator(clients, test_config, sleep=sleeps.append)
