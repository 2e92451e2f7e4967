"""
Local validation provider.

Runs the template checks in-process against the files of a repository ref,
whatever provider kind is configured. A run reports RUNNING on its first
status poll and COMPLETED afterwards.

Checks:
- template-syntax: every YAML file parses; template.yaml is a Template mapping
- parameter-validation: spec.parameters is a list of sections with properties
- step-validation: spec.steps is a non-empty list of steps with unique ids and an action
- security scan: regex rules over every file
- quality gate: documentation coverage (README, description, catalog entry)
"""

import itertools
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from gitorch.clients.base import VersionControlHost
from gitorch.errors import PermanentError
from gitorch.providers import ProviderKind
from gitorch.schemas.resources import Repository
from gitorch.schemas.validation import (
    CHECK_PARAMETERS,
    CHECK_STEPS,
    CHECK_SYNTAX,
    CheckStatus,
    Finding,
    QualityGate,
    RunState,
    SecurityScan,
    Severity,
    ValidationCheck,
    ValidationReport,
)

logger = logging.getLogger(__name__)

TEMPLATE_FILE = "template.yaml"

SECRET_RULES = (
    ("aws-access-key", Severity.ERROR, re.compile(r"AKIA[0-9A-Z]{16}")),
    ("private-key", Severity.ERROR, re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")),
    ("github-token", Severity.ERROR, re.compile(r"gh[pousr]_[A-Za-z0-9]{36,}")),
    (
        "hardcoded-credential",
        Severity.WARNING,
        re.compile(r"(?i)\b(password|passwd|secret|api[_-]?key|token)\b\s*[:=]\s*['\"]?(?!\$\{)[A-Za-z0-9/+_\-]{8,}"),
    ),
)


def _load_template(files: dict[str, str]) -> Optional[dict[str, Any]]:
    content = files.get(TEMPLATE_FILE)
    if content is None:
        return None
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def check_syntax(files: dict[str, str]) -> ValidationCheck:
    broken = []
    for path, content in files.items():
        if path.endswith((".yaml", ".yml")):
            try:
                list(yaml.safe_load_all(content))
            except yaml.YAMLError as e:
                broken.append(f"{path}: {str(e).splitlines()[0]}")
    if broken:
        return ValidationCheck(CHECK_SYNTAX, CheckStatus.FAILED, "; ".join(broken))

    template = _load_template(files)
    if template is None:
        return ValidationCheck(CHECK_SYNTAX, CheckStatus.FAILED, f"{TEMPLATE_FILE} missing or not a mapping")
    if template.get("kind") != "Template" or "apiVersion" not in template:
        return ValidationCheck(CHECK_SYNTAX, CheckStatus.FAILED, f"{TEMPLATE_FILE} must declare apiVersion and kind: Template")
    return ValidationCheck(CHECK_SYNTAX, CheckStatus.PASSED)


def check_parameters(files: dict[str, str]) -> ValidationCheck:
    template = _load_template(files) or {}
    parameters = (template.get("spec") or {}).get("parameters")
    if parameters is None:
        return ValidationCheck(CHECK_PARAMETERS, CheckStatus.WARNING, "template declares no parameters")
    if isinstance(parameters, dict):
        parameters = [parameters]
    if not isinstance(parameters, list):
        return ValidationCheck(CHECK_PARAMETERS, CheckStatus.FAILED, "spec.parameters must be a list")

    problems = []
    for index, section in enumerate(parameters):
        if not isinstance(section, dict) or not isinstance(section.get("properties", {}), dict):
            problems.append(f"section {index} has no properties mapping")
            continue
        for required in section.get("required", []) or []:
            if required not in (section.get("properties") or {}):
                problems.append(f"section {index} requires undeclared property {required!r}")
    if problems:
        return ValidationCheck(CHECK_PARAMETERS, CheckStatus.FAILED, "; ".join(problems))
    return ValidationCheck(CHECK_PARAMETERS, CheckStatus.PASSED)


def check_steps(files: dict[str, str]) -> ValidationCheck:
    template = _load_template(files) or {}
    steps = (template.get("spec") or {}).get("steps")
    if not isinstance(steps, list) or not steps:
        return ValidationCheck(CHECK_STEPS, CheckStatus.FAILED, "spec.steps must be a non-empty list")

    problems = []
    seen: set[str] = set()
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            problems.append(f"step {index} is not a mapping")
            continue
        step_id = step.get("id")
        if not step_id:
            problems.append(f"step {index} has no id")
        elif step_id in seen:
            problems.append(f"duplicate step id {step_id!r}")
        else:
            seen.add(step_id)
        if not step.get("action"):
            problems.append(f"step {step_id or index} has no action")
    if problems:
        return ValidationCheck(CHECK_STEPS, CheckStatus.FAILED, "; ".join(problems))
    return ValidationCheck(CHECK_STEPS, CheckStatus.PASSED)


def scan_secrets(files: dict[str, str]) -> SecurityScan:
    findings = []
    for path, content in sorted(files.items()):
        for rule, severity, pattern in SECRET_RULES:
            if pattern.search(content):
                findings.append(Finding(rule=rule, severity=severity, path=path, message=f"matches {rule} rule"))
    return SecurityScan(findings=tuple(findings))


def documentation_gate(files: dict[str, str], threshold: float) -> QualityGate:
    template = _load_template(files) or {}
    coverage = 0.0
    if any(path.lower() == "readme.md" for path in files):
        coverage += 50.0
    if (template.get("metadata") or {}).get("description"):
        coverage += 25.0
    if "catalog-info.yaml" in files:
        coverage += 25.0
    return QualityGate(coverage=coverage, threshold=threshold)


@dataclass
class _Run:
    report: ValidationReport
    polls: int = 0


class LocalValidationProvider:
    """
    ValidationProvider running checks locally against a VersionControlHost.

    Args:
        host: Host the repository files are read from
        coverage_threshold: Documentation coverage the quality gate requires
    """

    def __init__(self, host: VersionControlHost, coverage_threshold: float = 50.0):
        self.host = host
        self.coverage_threshold = coverage_threshold
        self._runs: dict[str, _Run] = {}
        self._ids = itertools.count(1)

    def supports(self, kind: ProviderKind) -> bool:
        return isinstance(kind, ProviderKind)

    def trigger(self, repo: Repository, kind: ProviderKind, ref: str) -> str:
        files = self.host.list_files(repo, ref)
        run_id = f"local-{kind.value}-{next(self._ids)}"
        report = ValidationReport(
            run_id=run_id,
            state=RunState.COMPLETED,
            checks=(check_syntax(files), check_parameters(files), check_steps(files)),
            security_scan=scan_secrets(files),
            quality_gate=documentation_gate(files, self.coverage_threshold),
        )
        self._runs[run_id] = _Run(report=report)
        logger.debug(f"Local validation run {run_id} over {len(files)} files of {repo.name}@{ref}")
        return run_id

    def _run(self, run_id: str) -> _Run:
        if run_id not in self._runs:
            raise PermanentError(f"Unknown validation run: {run_id}")
        return self._runs[run_id]

    def get_status(self, run_id: str) -> RunState:
        run = self._run(run_id)
        run.polls += 1
        return RunState.RUNNING if run.polls == 1 else run.report.state

    def get_report(self, run_id: str) -> ValidationReport:
        return self._run(run_id).report

    def security_scan(self, repo: Repository, ref: str) -> SecurityScan:
        return scan_secrets(self.host.list_files(repo, ref))
