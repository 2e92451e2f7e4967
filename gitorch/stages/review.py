"""
Open Review Request stage and the change impact analysis behind it.

The review request carries a structured description: delta counts, risk
classification, required reviewers and an estimated review duration.
High-risk requests notify stakeholders; the notification does not block
the merge.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Mapping, Optional

import yaml

from gitorch.compensation import CompensatingAction
from gitorch.schemas.resources import ImpactAnalysis, Repository, ReviewRequest, ReviewStatus, RiskLevel
from gitorch.stages.base import Attempt, RunScope, Stage
from gitorch.state_machine import PipelineState

logger = logging.getLogger(__name__)

RELEASE_MANIFEST = ".gitorch/release.yaml"

SECURITY_SENSITIVE = (
    "auth", "security", "token", "key", "secret", "password",
    "dockerfile", "docker-compose", ".env", "config",
)
# Sensitive markers that point at credentials themselves
CREDENTIAL_MARKERS = ("secret", "password", "token", "key", ".env")

BREAKING_INDICATORS = ("template.yaml", "package.json", "schema.json", "api/")
DEPENDENCY_FILES = ("package.json", "requirements.txt", "pom.xml", "go.mod")

COMPONENT_RULES = (
    ("template-config", ("template.yaml",)),
    ("skeleton-files", ("skeleton/",)),
    ("documentation", ("docs/",)),
    ("source-code", ("src/",)),
    ("tests", ("test/", ".test.")),
    ("dependencies", DEPENDENCY_FILES),
    ("ci-cd", (".github/", ".gitlab-ci", "jenkinsfile", "azure-pipelines")),
)
COMPONENT_WEIGHTS = {"ci-cd": 2, "dependencies": 2, "template-config": 1}

REVIEWERS_BY_RISK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}
REVIEW_TIME_FACTOR = {RiskLevel.LOW: 1.0, RiskLevel.MEDIUM: 1.5, RiskLevel.HIGH: 2.0}
MAX_REVIEWERS = 5

_RISK_ORDER = (RiskLevel.NONE, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH)


def _max_risk(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if _RISK_ORDER.index(a) >= _RISK_ORDER.index(b) else b


def affected_components(paths: list[str]) -> tuple[str, ...]:
    components = []
    for label, markers in COMPONENT_RULES:
        if any(marker in path.lower() for path in paths for marker in markers):
            components.append(label)
    return tuple(components)


def security_impact(paths: list[str]) -> tuple[RiskLevel, tuple[str, ...]]:
    """
    Security impact of touching the given paths.

    none when no sensitive path is touched, high when a credential-bearing
    path is touched, medium otherwise.
    """
    sensitive = tuple(p for p in paths if any(s in p.lower() for s in SECURITY_SENSITIVE))
    if not sensitive:
        return RiskLevel.NONE, ()
    if any(marker in p.lower() for p in sensitive for marker in CREDENTIAL_MARKERS):
        return RiskLevel.HIGH, sensitive
    return RiskLevel.MEDIUM, sensitive


def risk_score(files_changed: int, lines_changed: int, components: tuple[str, ...]) -> int:
    score = 0
    if files_changed > 20:
        score += 3
    elif files_changed > 10:
        score += 2
    elif files_changed > 5:
        score += 1

    if lines_changed > 500:
        score += 3
    elif lines_changed > 200:
        score += 2
    elif lines_changed > 100:
        score += 1

    score += sum(COMPONENT_WEIGHTS.get(c, 0) for c in components)
    return score


def analyze_impact(added: Mapping[str, str], removed_lines: int = 0) -> ImpactAnalysis:
    """
    Analyze the impact of a change set.

    Args:
        added: New or changed files, by path
        removed_lines: Lines removed by the change

    Returns:
        ImpactAnalysis with risk, reviewers and review time
    """
    paths = sorted(added)
    lines_added = sum(len(content.splitlines()) for content in added.values())
    components = affected_components(paths)

    score = risk_score(len(paths), lines_added + removed_lines, components)
    if score >= 6:
        risk = RiskLevel.HIGH
    elif score >= 3:
        risk = RiskLevel.MEDIUM
    else:
        risk = RiskLevel.LOW

    sec_impact, sensitive = security_impact(paths)
    if sec_impact != RiskLevel.NONE:
        risk = _max_risk(risk, sec_impact)

    breaking = any(ind in p for p in paths for ind in BREAKING_INDICATORS)
    dependencies = any(dep in p for p in paths for dep in DEPENDENCY_FILES)

    reviewers = 1 + REVIEWERS_BY_RISK[risk]
    if sec_impact in (RiskLevel.MEDIUM, RiskLevel.HIGH):
        reviewers += REVIEWERS_BY_RISK[sec_impact]
    if breaking:
        reviewers += 1

    minutes = 15 + (lines_added + removed_lines) // 10 + 2 * len(paths)
    minutes = minutes * REVIEW_TIME_FACTOR[risk] + 5 * len(components)

    return ImpactAnalysis(
        files_changed=len(paths),
        lines_added=lines_added,
        lines_removed=removed_lines,
        affected_components=components,
        security_impact=sec_impact,
        risk_level=risk,
        breaking_changes=breaking,
        dependency_changes=dependencies,
        required_reviewers=min(reviewers, MAX_REVIEWERS),
        estimated_review_minutes=round(minutes),
        sensitive_paths=sensitive,
    )


def render_description(name: str, description: str, impact: ImpactAnalysis) -> str:
    """Markdown body of the review request."""
    checklist = ["- [ ] Template structure reviewed", "- [ ] Parameters and steps validated"]
    if impact.security_impact != RiskLevel.NONE:
        checklist.append("- [ ] Security review")
    if impact.breaking_changes:
        checklist.append("- [ ] Breaking changes communicated")
    if impact.dependency_changes:
        checklist.append("- [ ] Dependency changes approved")

    lines = [
        f"## {name}",
        "",
        description or "Automated template deployment.",
        "",
        "### Change impact",
        "",
        f"- **Files changed**: {impact.files_changed}",
        f"- **Lines**: +{impact.lines_added} / -{impact.lines_removed}",
        f"- **Risk level**: {impact.risk_level.value.upper()}",
        f"- **Security impact**: {impact.security_impact.value.upper()}",
        f"- **Affected components**: {', '.join(impact.affected_components) or 'none'}",
        f"- **Breaking changes**: {'yes' if impact.breaking_changes else 'no'}",
        f"- **Required reviewers**: {impact.required_reviewers}",
        f"- **Estimated review time**: {impact.estimated_review_minutes} minutes",
    ]
    if impact.sensitive_paths:
        lines += ["", "### Security-sensitive paths", ""]
        lines += [f"- `{p}`" for p in impact.sensitive_paths]
    lines += ["", "### Checklist", "", *checklist, ""]
    return "\n".join(lines)


def feature_branch_name(repo_name: str, now: datetime) -> str:
    return f"feature/{repo_name}-{now.strftime('%Y%m%d%H%M%S')}"


class OpenReviewStage(Stage):
    """Create a feature branch carrying the release manifest and open a review request."""

    name = "open_review"
    requires = ("commit_artifacts",)
    target_state = PipelineState.REVIEW_OPEN

    def run(self, scope: RunScope, attempt: Attempt) -> ReviewRequest:
        host = scope.clients.host
        repo: Repository = scope.repository
        bundle = scope.bundle

        committed = host.list_files(repo, scope.commit_id)
        impact = analyze_impact(committed)

        branch = feature_branch_name(repo.name, scope.context.clock())
        if host.get_branch(repo, branch) is None:
            host.create_branch(repo, branch, from_ref=repo.default_branch)
        manifest = {
            "name": bundle.name,
            "version": bundle.version,
            "owner": bundle.owner,
            "source_commit": scope.commit_id,
            "environment": scope.config.deploy.environment,
            "operation_id": scope.context.operation_id,
            "impact": impact.to_dict(),
        }
        host.commit(repo, {RELEASE_MANIFEST: yaml.safe_dump(manifest, sort_keys=False)},
                    f"Release {bundle.name} {bundle.version}", branch=branch)

        review = host.open_review_request(
            repo,
            source_branch=branch,
            target_branch=repo.default_branch,
            title=f"Deploy {bundle.name} {bundle.version}",
            description=render_description(bundle.name, bundle.description, impact),
        )
        review = replace(review, impact=impact)
        logger.info(
            f"Opened review request #{review.id} ({impact.risk_level.value} risk, "
            f"{impact.required_reviewers} reviewers, ~{impact.estimated_review_minutes}m)",
            extra={"stage": self.name, "metadata": impact.to_dict()},
        )

        if impact.risk_level == RiskLevel.HIGH or impact.breaking_changes:
            self._notify_stakeholders(scope, review, impact)
        return review

    def _notify_stakeholders(self, scope: RunScope, review: ReviewRequest, impact: ImpactAnalysis) -> None:
        if impact.risk_level == RiskLevel.HIGH:
            logger.warning(f"High-risk review request #{review.id} in {review.repository}")
        try:
            scope.clients.notifier.notify(
                "stakeholder_review",
                f"Review request #{review.id} in {review.repository} is {impact.risk_level.value} risk",
                {"review_id": review.id, "repository": review.repository, "impact": impact.to_dict()},
            )
        except Exception as e:
            # Notify-only: a failed notification never blocks the review
            logger.warning(f"Stakeholder notification failed for review #{review.id}: {e}")

    def compensation(self, scope: RunScope, output: ReviewRequest) -> Optional[CompensatingAction]:
        host = scope.clients.host
        repo = scope.repository

        def still_open() -> bool:
            if not host.repository_exists(repo):
                return False
            return host.get_review_request(repo, output.id).status == ReviewStatus.OPEN

        return CompensatingAction(
            action_id=f"{self.name}:{repo.name}#{output.id}",
            description=f"Close review request #{output.id} in {repo.name}",
            execute=lambda: host.close_review_request(repo, output),
            can_execute=still_open,
            stage=self.name,
        )

    def error_details(self, scope: RunScope, attempt: Attempt) -> dict[str, Any]:
        details = super().error_details(scope, attempt)
        details["commit_id"] = scope.commit_id
        return details
