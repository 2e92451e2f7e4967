"""
Validation provider kinds and the workflow files each one needs.

The provider is a closed set of kinds. Anything else is a configuration
error that no recovery can fix.
"""

from enum import Enum

import yaml

from gitorch.errors import ClassifiedError, ErrorKind


class ProviderKind(str, Enum):
    GITHUB_ACTIONS = "github-actions"
    GITLAB_CI = "gitlab-ci"
    JENKINS = "jenkins"
    AZURE_DEVOPS = "azure-devops"


SUPPORTED_PROVIDERS = tuple(k.value for k in ProviderKind)

WORKFLOW_FILES = {
    ProviderKind.GITHUB_ACTIONS: ".github/workflows/template-validation.yml",
    ProviderKind.GITLAB_CI: ".gitlab-ci.yml",
    ProviderKind.JENKINS: "Jenkinsfile",
    ProviderKind.AZURE_DEVOPS: "azure-pipelines.yml",
}

VALIDATION_COMMANDS = (
    "gitorch-validate syntax template.yaml",
    "gitorch-validate parameters template.yaml",
    "gitorch-validate steps template.yaml",
    "gitorch-validate security .",
)


def resolve_provider(value: "str | ProviderKind", component: str = "validation", operation: str = "trigger_validation") -> ProviderKind:
    """
    Map a configured provider name to its kind.

    Raises:
        ClassifiedError: CONFIGURATION_ERROR, not recoverable, for unknown kinds
    """
    try:
        return ProviderKind(value)
    except ValueError:
        raise ClassifiedError(
            kind=ErrorKind.CONFIGURATION_ERROR,
            component=component,
            operation=operation,
            message=f"Unsupported validation provider: {value}",
            details={"provider": str(value), "supported": ", ".join(SUPPORTED_PROVIDERS)},
            recoverable=False,
        )


def workflow_file(kind: ProviderKind) -> str:
    return WORKFLOW_FILES[kind]


def workflow_content(kind: ProviderKind, default_branch: str = "main") -> str:
    """Workflow definition that runs the validation checks for the provider."""
    if kind == ProviderKind.GITHUB_ACTIONS:
        workflow = {
            "name": "Template Validation",
            "on": {
                "pull_request": {"branches": [default_branch]},
                "push": {"branches": [default_branch]},
            },
            "jobs": {
                "validate": {
                    "runs-on": "ubuntu-latest",
                    "steps": [{"uses": "actions/checkout@v4"}]
                    + [{"name": cmd.split()[1].title(), "run": cmd} for cmd in VALIDATION_COMMANDS],
                }
            },
        }
        return yaml.safe_dump(workflow, sort_keys=False)

    if kind == ProviderKind.GITLAB_CI:
        workflow = {
            "stages": ["validate"],
            "template-validation": {
                "stage": "validate",
                "script": list(VALIDATION_COMMANDS),
                "rules": [{"if": "$CI_PIPELINE_SOURCE == 'merge_request_event'"},
                          {"if": f"$CI_COMMIT_BRANCH == '{default_branch}'"}],
            },
        }
        return yaml.safe_dump(workflow, sort_keys=False)

    if kind == ProviderKind.AZURE_DEVOPS:
        workflow = {
            "trigger": [default_branch],
            "pr": [default_branch],
            "pool": {"vmImage": "ubuntu-latest"},
            "steps": [{"script": cmd, "displayName": cmd.split()[1].title()} for cmd in VALIDATION_COMMANDS],
        }
        return yaml.safe_dump(workflow, sort_keys=False)

    stages = "\n".join(
        f"        stage('{cmd.split()[1].title()}') {{ steps {{ sh '{cmd}' }} }}"
        for cmd in VALIDATION_COMMANDS
    )
    return f"pipeline {{\n    agent any\n    stages {{\n{stages}\n    }}\n}}\n"
