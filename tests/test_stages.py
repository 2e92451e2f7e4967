"""Tests for individual pipeline stages.

Stages are driven directly through a RunScope the way the orchestrator
drives them: execute, publish the output, record a checkpoint.
"""

from dataclasses import replace

import pytest
import yaml

from gitorch.clients.memory import passing_report
from gitorch.errors import ClassifiedError, ErrorKind, PermanentError
from gitorch.schemas.context import OperationContext
from gitorch.schemas.resources import ReviewStatus, RiskLevel
from gitorch.schemas.validation import Finding, RunState, SecurityScan, Severity, Verdict
from gitorch.stages import (
    CommitArtifactsStage,
    CreateRepositoryStage,
    DeployStage,
    MergeStage,
    OpenReviewStage,
    ProcessValidationStage,
    RegisterStage,
    TriggerValidationStage,
    VerifyStage,
    default_stages,
    sanitize_repository_name,
)
from gitorch.stages.base import Attempt, RunScope
from gitorch.stages.review import RELEASE_MANIFEST


@pytest.fixture
def scope(test_config, clients, sample_bundle):
    return RunScope(
        context=OperationContext(component="test"),
        config=test_config,
        clients=clients,
        bundle=sample_bundle,
        sleep=lambda seconds: None,
    )


def advance(scope, until):
    """Run default stages in order up to and including `until`."""
    for stage in default_stages():
        output = stage.execute(scope, Attempt())
        stage.apply(scope, output)
        scope.context.add_checkpoint(stage.name, output)
        if stage.name == until:
            return output
    raise AssertionError(f"no stage named {until}")


# =============================================================================
# Repository stages
# =============================================================================


class TestSanitizeRepositoryName:
    @pytest.mark.parametrize("name, expected", [
        ("My Service With Spaces & Special!", "my-service-with-spaces-special"),
        ("already-fine", "already-fine"),
        ("--Leading and trailing--", "leading-and-trailing"),
        ("UPPER_case.name", "upper-case-name"),
        ("!!!", ""),
    ])
    def test_sanitize(self, name, expected):
        assert sanitize_repository_name(name) == expected

    def test_truncated_without_trailing_dash(self):
        name = sanitize_repository_name("a" * 62 + " b")
        assert len(name) <= 63
        assert not name.endswith("-")


class TestCreateRepositoryStage:
    def test_creates_sanitized_repository(self, scope, clients):
        repo = CreateRepositoryStage().execute(scope, Attempt())
        assert repo.name == "my-service"
        assert clients.host.repository_exists(repo)

    def test_unusable_name_is_unrecoverable(self, scope, sample_bundle):
        scope.bundle = replace(sample_bundle, name="!!!")
        with pytest.raises(ClassifiedError) as exc_info:
            CreateRepositoryStage().execute(scope, Attempt())
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR
        assert exc_info.value.recoverable is False

    def test_existing_repository_is_gitops_error(self, scope, clients):
        clients.host.create_repository("my-service", "platform-team")
        with pytest.raises(ClassifiedError) as exc_info:
            CreateRepositoryStage().execute(scope, Attempt())
        assert exc_info.value.kind == ErrorKind.GITOPS_ERROR
        assert exc_info.value.details["repository"] == "my-service"

    def test_compensation_deletes_repository(self, scope, clients):
        repo = advance(scope, "create_repository")
        action = CreateRepositoryStage().compensation(scope, repo)
        action.execute()
        assert not clients.host.repository_exists(repo)
        assert action.can_execute() is False


class TestCommitArtifactsStage:
    def test_commits_bundle_and_workflow(self, scope, clients):
        commit_id = advance(scope, "commit_artifacts")
        files = clients.host.list_files(scope.repository, commit_id)
        assert set(files) == set(scope.bundle.paths) | {".github/workflows/template-validation.yml"}

    def test_workflow_follows_provider(self, scope, clients, test_config):
        test_config.validation.provider = "jenkins"
        commit_id = advance(scope, "commit_artifacts")
        assert "Jenkinsfile" in clients.host.list_files(scope.repository, commit_id)

    def test_default_message(self, scope, clients):
        advance(scope, "commit_artifacts")
        assert clients.host.called("commit")[0][2] == "Add My Service artifacts (5 files)"

    def test_custom_message(self, scope, clients):
        scope.commit_message = "Initial template"
        advance(scope, "commit_artifacts")
        assert clients.host.called("commit")[0][2] == "Initial template"

    def test_transient_failure_is_network_error(self, scope, clients):
        advance(scope, "create_repository")
        clients.host.fail("commit", ConnectionError("connection reset"))
        with pytest.raises(ClassifiedError) as exc_info:
            CommitArtifactsStage().execute(scope, Attempt(retry_count=1))
        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert exc_info.value.retry_count == 1
        assert exc_info.value.recoverable is True


# =============================================================================
# Review and validation stages
# =============================================================================


class TestOpenReviewStage:
    def test_opens_review_from_feature_branch(self, scope, clients):
        review = advance(scope, "open_review")
        assert review.source_branch.startswith("feature/my-service-")
        assert review.target_branch == "main"
        assert review.status == ReviewStatus.OPEN
        assert "### Change impact" in review.description

    def test_release_manifest_only_on_feature_branch(self, scope, clients):
        review = advance(scope, "open_review")
        branch_files = clients.host.list_files(scope.repository, review.source_branch)
        manifest = yaml.safe_load(branch_files[RELEASE_MANIFEST])
        assert manifest["source_commit"] == scope.commit_id
        assert RELEASE_MANIFEST not in clients.host.list_files(scope.repository, "main")

    def test_impact_attached(self, scope):
        review = advance(scope, "open_review")
        assert review.impact.files_changed == 5
        assert review.impact.breaking_changes
        assert review.impact.risk_level == RiskLevel.MEDIUM

    def test_breaking_change_notifies_stakeholders(self, scope, notifier):
        advance(scope, "open_review")
        assert "stakeholder_review" in notifier.names()

    def test_notification_failure_does_not_block(self, scope, clients):
        class BrokenNotifier:
            def notify(self, event, message, payload=None):
                raise ConnectionError("chat service down")

        clients.notifier = BrokenNotifier()
        assert advance(scope, "open_review").status == ReviewStatus.OPEN

    def test_compensation_closes_open_review(self, scope, clients):
        review = advance(scope, "open_review")
        action = OpenReviewStage().compensation(scope, review)
        assert action.can_execute()
        action.execute()
        assert clients.host.get_review_request(scope.repository, review.id).status == ReviewStatus.CLOSED
        assert not action.can_execute()


class TestValidationStages:
    def test_trigger_uses_review_branch(self, scope, clients):
        run_id = advance(scope, "trigger_validation")
        assert run_id == "github-actions-run-1"
        assert clients.validation.called("trigger")[0][3] == scope.review_request.source_branch

    def test_unsupported_provider_is_configuration_error(self, scope, clients):
        advance(scope, "open_review")
        clients.validation.supported = set()
        with pytest.raises(ClassifiedError) as exc_info:
            TriggerValidationStage().execute(scope, Attempt())
        assert exc_info.value.kind == ErrorKind.CONFIGURATION_ERROR
        assert exc_info.value.recoverable is False

    def test_passing_run(self, scope, notifier):
        results = advance(scope, "process_validation")
        assert results.verdict == Verdict.PASSED
        assert results.state == RunState.COMPLETED
        assert "validation_passed" in notifier.names()

    def test_observer_sees_status_changes(self, scope):
        seen = []
        scope.observer = lambda run_id, state: seen.append(state)
        advance(scope, "process_validation")
        assert seen == [RunState.RUNNING, RunState.COMPLETED]

    def test_failed_run(self, scope, clients, notifier):
        clients.validation.status_script = (RunState.RUNNING, RunState.FAILED)
        advance(scope, "trigger_validation")
        with pytest.raises(ClassifiedError) as exc_info:
            ProcessValidationStage().execute(scope, Attempt())
        error = exc_info.value
        assert error.kind == ErrorKind.VALIDATION_ERROR
        assert error.recoverable is False
        assert error.details["results"].verdict == Verdict.FAILED
        assert "validation_failed" in notifier.names()

    def test_timeout_is_unrecoverable(self, scope, clients, test_config):
        clients.validation.status_script = (RunState.RUNNING,)
        test_config.validation.poll_timeout_seconds = 0
        advance(scope, "trigger_validation")
        with pytest.raises(ClassifiedError) as exc_info:
            ProcessValidationStage().execute(scope, Attempt())
        assert exc_info.value.details["last_status"] == "running"
        assert exc_info.value.recoverable is False
        assert scope.validation is None

    def test_warning_verdict_passes(self, scope, clients, notifier):
        clients.validation.report_factory = lambda run_id: replace(
            passing_report(run_id),
            security_scan=SecurityScan(findings=(Finding("hardcoded-credential", Severity.WARNING),)),
        )
        results = advance(scope, "process_validation")
        assert results.verdict == Verdict.WARNING
        assert "validation_warning" in notifier.names()


# =============================================================================
# Merge
# =============================================================================


class TestMergePreconditions:
    """Each unmet precondition blocks the merge with the right recoverability."""

    def _expect(self, scope, clients, precondition, recoverable):
        with pytest.raises(ClassifiedError) as exc_info:
            MergeStage().execute(scope, Attempt())
        error = exc_info.value
        assert error.kind == ErrorKind.GITOPS_ERROR
        assert error.details["precondition"] == precondition
        assert error.recoverable is recoverable
        assert clients.host.called("merge_review_request") == []

    def test_closed_review(self, scope, clients):
        advance(scope, "process_validation")
        clients.host.close_review_request(scope.repository, scope.review_request)
        self._expect(scope, clients, "review_open", False)

    def test_source_branch_missing(self, scope, clients):
        advance(scope, "process_validation")
        clients.host.delete_branch(scope.repository, scope.review_request.source_branch)
        self._expect(scope, clients, "source_branch", False)

    def test_failed_verdict(self, scope, clients):
        results = advance(scope, "process_validation")
        scope.outputs["process_validation"] = replace(results, verdict=Verdict.FAILED)
        self._expect(scope, clients, "validation", True)

    def test_conflicts(self, scope, clients):
        advance(scope, "process_validation")
        clients.host.conflicting_reviews.add(scope.review_request.id)
        self._expect(scope, clients, "conflicts", True)

    def test_final_security_scan(self, scope, clients):
        advance(scope, "process_validation")
        clients.validation.final_scan = SecurityScan(findings=(Finding("private-key", Severity.ERROR),))
        self._expect(scope, clients, "security_scan", True)


class TestMergeStage:
    def test_merge_marks_review_merged(self, scope, clients):
        outcome = advance(scope, "merge")
        assert outcome.review_request.status == ReviewStatus.MERGED
        assert outcome.review_request.merge_commit == outcome.merge_commit
        assert outcome.review_request.impact is not None
        assert outcome.source_branch_deleted
        assert clients.host.get_branch(scope.repository, outcome.review_request.source_branch) is None

    def test_branch_delete_failure_is_tolerated(self, scope, clients):
        advance(scope, "process_validation")
        clients.host.fail("delete_branch", PermanentError("protected branch"))
        outcome = MergeStage().execute(scope, Attempt())
        assert outcome.source_branch_deleted is False

    def test_scope_review_request_reflects_merge(self, scope):
        advance(scope, "merge")
        assert scope.review_request.status == ReviewStatus.MERGED

    def test_review_merge_goes_through_merge_branches(self, scope, clients):
        outcome = advance(scope, "merge")
        review = outcome.review_request
        assert clients.host.called("merge_branches") == [
            ("merge_branches", scope.repository.name, review.source_branch, review.target_branch),
        ]


class TestMergeBranches:
    @pytest.fixture
    def repo(self, scope, clients):
        advance(scope, "commit_artifacts")
        repo = scope.repository
        clients.host.create_branch(repo, "feature/docs")
        clients.host.commit(repo, {"docs/extra.md": "# Extra\n"}, "docs", branch="feature/docs")
        return repo

    def test_merges_source_into_target(self, repo, clients):
        merge_commit = clients.host.merge_branches(repo, "feature/docs", "main")

        assert clients.host.get_branch(repo, "main").commit_id == merge_commit
        assert "docs/extra.md" in clients.host.list_files(repo, "main")

    @pytest.mark.parametrize("source, target", [("feature/missing", "main"), ("feature/docs", "release")])
    def test_missing_branch(self, repo, clients, source, target):
        with pytest.raises(PermanentError, match="Branch not found"):
            clients.host.merge_branches(repo, source, target)

    def test_conflicts_refused(self, repo, clients):
        clients.host.conflicting_branches.add(("feature/docs", "main"))
        before = clients.host.get_branch(repo, "main").commit_id

        with pytest.raises(PermanentError, match="Merge conflicts"):
            clients.host.merge_branches(repo, "feature/docs", "main")

        assert clients.host.get_branch(repo, "main").commit_id == before


# =============================================================================
# Deploy, verify, register
# =============================================================================


class TestDeployStage:
    def test_deploys_merged_files_without_release_manifest(self, scope, clients):
        deployment = advance(scope, "deploy")
        plan = clients.deployment.plans[deployment.deployment_id]
        assert RELEASE_MANIFEST not in plan.file_map
        assert "template.yaml" in plan.file_map
        assert plan.commit_id == scope.merge.merge_commit
        assert deployment.success
        assert "partial_deployment" not in scope.notes

    def test_readiness_timeout(self, scope, clients, test_config):
        clients.deployment.ready_after = 100
        test_config.deploy.readiness_timeout_seconds = 0
        advance(scope, "merge")
        with pytest.raises(ClassifiedError) as exc_info:
            DeployStage().execute(scope, Attempt())
        error = exc_info.value
        assert error.kind == ErrorKind.DEPLOYMENT_ERROR
        assert error.details["deployment_id"] == "deploy-0001"
        assert error.details["cleanup_attempted"] is False

    def test_retry_removes_partial_deployment(self, scope, clients):
        advance(scope, "merge")
        clients.deployment.fail("restart_services", TimeoutError("restart timed out"))
        with pytest.raises(ClassifiedError):
            DeployStage().execute(scope, Attempt())

        deployment = DeployStage().execute(scope, Attempt(retry_count=1))

        assert clients.deployment.undeployed == ["deploy-0001"]
        assert deployment.deployment_id == "deploy-0002"

    def test_failure_cleanup_removes_partial_deployment(self, scope, clients):
        advance(scope, "merge")
        clients.deployment.fail("copy_files", PermanentError("disk full"))
        with pytest.raises(ClassifiedError):
            DeployStage().execute(scope, Attempt())

        action = DeployStage().failure_cleanup(scope)
        assert action.action_id == "deploy:partial:deploy-0001"
        assert action.can_execute()
        action.execute()

        assert clients.deployment.plans == {}
        assert "partial_deployment" not in scope.notes

    def test_no_failure_cleanup_after_success(self, scope):
        advance(scope, "deploy")
        assert DeployStage().failure_cleanup(scope) is None

    def test_refuses_unmerged_review(self, scope):
        outcome = advance(scope, "merge")
        scope.outputs["merge"] = replace(outcome, review_request=outcome.review_request.with_status(ReviewStatus.OPEN))
        with pytest.raises(ClassifiedError) as exc_info:
            DeployStage().execute(scope, Attempt())
        assert exc_info.value.recoverable is False


class TestVerifyStage:
    def test_all_checks_pass(self, scope):
        assert advance(scope, "verify") is True
        assert scope.notes["verification"] == {
            "artifacts": True, "configuration": True, "api": True, "dry_run": True,
        }

    def test_soft_failure_returns_false(self, scope, clients):
        advance(scope, "deploy")
        clients.deployment.api_up = False
        clients.deployment.fail("dry_run", ConnectionError("scaffolder down"))

        assert VerifyStage().execute(scope, Attempt()) is False
        assert scope.notes["verification"]["api"] is False
        assert scope.notes["verification"]["dry_run"] is False
        assert scope.notes["verification"]["artifacts"] is True


class TestRegisterStage:
    def test_registers_verified_deployment(self, scope, clients):
        entry_id = advance(scope, "register")
        record = clients.catalog.records["my-service"]
        assert entry_id == "catalog:my-service"
        assert record.version == "1.2.0"
        assert record.metadata["merge_commit"] == scope.merge.merge_commit
        assert record.metadata["type"] == "service"

    def test_unverified_deployment_not_registered(self, scope, clients):
        advance(scope, "verify")
        scope.outputs["verify"] = False
        with pytest.raises(ClassifiedError) as exc_info:
            RegisterStage().execute(scope, Attempt())
        assert exc_info.value.kind == ErrorKind.REGISTRY_ERROR
        assert clients.catalog.records == {}
