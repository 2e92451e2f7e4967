"""
Validation schemas - CI run state, checks, scans and the aggregated verdict.

A validation provider reports a ValidationReport for a finished run. The
Process Validation Results stage folds it into a single Verdict with
aggregate_verdict().
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class RunState(str, Enum):
    """Status of a validation run as reported by the provider."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


class CheckStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class Verdict(str, Enum):
    """Aggregated outcome of a validation run."""
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


# Named checks every provider reports
CHECK_SYNTAX = "template-syntax"
CHECK_PARAMETERS = "parameter-validation"
CHECK_STEPS = "step-validation"
REQUIRED_CHECKS = (CHECK_SYNTAX, CHECK_PARAMETERS, CHECK_STEPS)

GRADES = ("A", "B", "C", "D", "E")


@dataclass(frozen=True)
class ValidationCheck:
    name: str
    status: CheckStatus
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "message": self.message}


@dataclass(frozen=True)
class Finding:
    """A single security-scan finding."""
    rule: str
    severity: Severity
    path: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"rule": self.rule, "severity": self.severity.value, "path": self.path, "message": self.message}


@dataclass(frozen=True)
class SecurityScan:
    """Summary of a security scan."""
    findings: tuple[Finding, ...] = ()

    @property
    def errors(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.ERROR)

    @property
    def warnings(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.WARNING)

    @property
    def passed(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "vulnerabilities": len(self.findings),
            "errors": self.errors,
            "warnings": self.warnings,
            "status": "passed" if self.passed else "failed",
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class QualityGate:
    """
    Quality-gate summary.

    The gate is met when coverage reaches the threshold and no grade is
    worse than max_grade.
    """
    coverage: float = 100.0
    threshold: float = 80.0
    maintainability: str = "A"
    reliability: str = "A"
    security: str = "A"
    max_grade: str = "C"

    def __post_init__(self):
        for grade in (self.maintainability, self.reliability, self.security, self.max_grade):
            if grade not in GRADES:
                raise ValueError(f"Invalid quality grade {grade!r}; expected one of {GRADES}")

    @property
    def met(self) -> bool:
        limit = GRADES.index(self.max_grade)
        grades_ok = all(
            GRADES.index(g) <= limit
            for g in (self.maintainability, self.reliability, self.security)
        )
        return self.coverage >= self.threshold and grades_ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverage": self.coverage,
            "threshold": self.threshold,
            "maintainability": self.maintainability,
            "reliability": self.reliability,
            "security": self.security,
            "status": "passed" if self.met else "failed",
        }


@dataclass(frozen=True)
class ValidationReport:
    """Raw results reported by a validation provider for one run."""
    run_id: str
    state: RunState
    checks: tuple[ValidationCheck, ...] = ()
    security_scan: SecurityScan = field(default_factory=SecurityScan)
    quality_gate: QualityGate = field(default_factory=QualityGate)


@dataclass(frozen=True)
class ValidationResults:
    """Verdict for one run, with the report it was derived from."""
    run_id: str
    state: RunState
    verdict: Verdict
    report: Optional[ValidationReport] = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "state": self.state.value,
            "verdict": self.verdict.value,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }
        if self.report is not None:
            result["checks"] = [c.to_dict() for c in self.report.checks]
            result["security_scan"] = self.report.security_scan.to_dict()
            result["quality_gate"] = self.report.quality_gate.to_dict()
        return result


def aggregate_verdict(
    checks: tuple[ValidationCheck, ...] | list[ValidationCheck],
    security_scan: SecurityScan,
    quality_gate: QualityGate,
) -> tuple[Verdict, tuple[str, ...], tuple[str, ...]]:
    """
    Fold checks, security scan and quality gate into one verdict.

    - passed: every check passed, no findings, quality gate met
    - warning: only warn-severity findings or warning checks
    - failed: any failed or missing check, any error-severity finding,
      or an unmet quality gate

    Returns:
        (verdict, error messages, warning messages)
    """
    errors: list[str] = []
    warnings: list[str] = []

    by_name = {c.name: c for c in checks}
    for name in REQUIRED_CHECKS:
        if name not in by_name:
            errors.append(f"check {name} did not report")

    for check in checks:
        if check.status == CheckStatus.FAILED:
            errors.append(f"{check.name}: {check.message or 'failed'}")
        elif check.status == CheckStatus.WARNING:
            warnings.append(f"{check.name}: {check.message or 'warning'}")

    for finding in security_scan.findings:
        text = f"security {finding.rule}" + (f" in {finding.path}" if finding.path else "")
        if finding.message:
            text += f": {finding.message}"
        if finding.severity == Severity.ERROR:
            errors.append(text)
        else:
            warnings.append(text)

    if not quality_gate.met:
        errors.append(
            f"quality gate not met (coverage {quality_gate.coverage:.1f}% / "
            f"threshold {quality_gate.threshold:.1f}%)"
        )

    if errors:
        verdict = Verdict.FAILED
    elif warnings:
        verdict = Verdict.WARNING
    else:
        verdict = Verdict.PASSED
    return verdict, tuple(errors), tuple(warnings)
