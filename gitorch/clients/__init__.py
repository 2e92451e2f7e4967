"""
Client implementations for the collaborator contracts.

create_clients() wires the production clients from configuration:

- version control: LocalGitHost (bare repositories under git.repositories_root)
- validation: LocalValidationProvider
- deployment + catalog: PortalClient when portal.base_url is set,
  otherwise DirectoryDeploymentTarget and LocalCatalog

With dry_run the deterministic in-memory fakes are used instead.
"""

from pathlib import Path

from gitorch.clients.base import (
    CapabilityCatalog,
    Clients,
    DeploymentTarget,
    LoggingNotifier,
    Notifier,
    ValidationProvider,
    VersionControlHost,
)
from gitorch.config import GitorchConfig

CATALOG_FILE = "catalog.json"


def create_clients(config: GitorchConfig, dry_run: bool = False) -> Clients:
    if dry_run:
        from gitorch.clients.memory import (
            InMemoryCatalog,
            InMemoryDeploymentTarget,
            InMemoryHost,
            InMemoryValidationProvider,
        )

        return Clients(
            host=InMemoryHost(base_url=config.git.remote_url, default_branch=config.git.default_branch),
            validation=InMemoryValidationProvider(),
            deployment=InMemoryDeploymentTarget(),
            catalog=InMemoryCatalog(),
        )

    from gitorch.clients.git_cli import LocalGitHost
    from gitorch.clients.local_ci import LocalValidationProvider

    host = LocalGitHost(Path(config.git.repositories_root), default_branch=config.git.default_branch)
    validation = LocalValidationProvider(host)

    if config.portal.base_url:
        from gitorch.clients.portal import PortalClient

        portal = PortalClient(
            config.portal.base_url,
            token=config.portal.token,
            timeout=config.portal.timeout_seconds,
            services=config.deploy.services,
        )
        return Clients(host=host, validation=validation, deployment=portal, catalog=portal)

    from gitorch.clients.local_deploy import DirectoryDeploymentTarget, LocalCatalog

    serving_root = Path(config.deploy.serving_root).expanduser()
    return Clients(
        host=host,
        validation=validation,
        deployment=DirectoryDeploymentTarget(serving_root, services=config.deploy.services),
        catalog=LocalCatalog(serving_root / CATALOG_FILE),
    )


__all__ = [
    "CapabilityCatalog",
    "Clients",
    "DeploymentTarget",
    "LoggingNotifier",
    "Notifier",
    "ValidationProvider",
    "VersionControlHost",
    "create_clients",
]
