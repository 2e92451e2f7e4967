"""
Local version-control host backed by the git CLI.

Repositories are bare repositories under a root directory
(<root>/<owner>/<name>.git). Commits, merges and reverts run in a scratch
clone that is pushed back and discarded. Review requests are kept as JSON
next to the refs (<bare>/gitorch-reviews.json).

git failures raise GitCommandError (a PermanentError); a missing git
binary raises PermanentError as well.
"""

import json
import logging
import shutil
import subprocess
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Mapping, Optional

from gitorch.errors import PermanentError
from gitorch.schemas.resources import Branch, Repository, ReviewRequest, ReviewStatus

logger = logging.getLogger(__name__)

REVIEWS_FILE = "gitorch-reviews.json"
COMMITTER = ("-c", "user.name=gitorch", "-c", "user.email=gitorch@localhost")


class GitCommandError(PermanentError):
    """A git command exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed with exit code {returncode}: {stderr.strip()[:500]}")


def run_git(args: list[str], cwd: Optional[Path] = None, check: bool = True) -> subprocess.CompletedProcess:
    """
    Run a git command.

    Raises:
        GitCommandError: If check is set and git exits non-zero
        PermanentError: If git is not installed
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        raise PermanentError("git executable not found on PATH")

    if check and result.returncode != 0:
        raise GitCommandError(args, result.returncode, result.stderr or result.stdout)
    return result


class LocalGitHost:
    """
    VersionControlHost over local bare repositories.

    Args:
        root: Directory holding the bare repositories
        default_branch: Branch created with each repository
    """

    def __init__(self, root: Path, default_branch: str = "main"):
        self.root = Path(root).expanduser()
        self.default_branch = default_branch

    def _bare(self, repo: Repository) -> Path:
        return self.root / repo.owner / f"{repo.name}.git"

    def _require(self, repo: Repository) -> Path:
        bare = self._bare(repo)
        if not bare.exists():
            raise PermanentError(f"Repository not found: {repo.id}")
        return bare

    def _rev(self, bare: Path, ref: str) -> Optional[str]:
        result = run_git(["--git-dir", str(bare), "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def _clone(self, bare: Path, workdir: Path, branch: str) -> None:
        if self._rev(bare, f"refs/heads/{branch}"):
            run_git(["clone", "--quiet", "--branch", branch, str(bare), str(workdir)])
        else:
            run_git(["clone", "--quiet", str(bare), str(workdir)])
            run_git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=workdir)

    def _commit_and_push(self, workdir: Path, branch: str, message: str) -> str:
        run_git(["add", "-A"], cwd=workdir)
        run_git([*COMMITTER, "commit", "--quiet", "--allow-empty", "-m", message], cwd=workdir)
        run_git(["push", "--quiet", "origin", f"HEAD:refs/heads/{branch}"], cwd=workdir)
        return run_git(["rev-parse", "HEAD"], cwd=workdir).stdout.strip()

    # Reviews ---------------------------------------------------------------

    def _load_reviews(self, bare: Path) -> dict[str, dict]:
        path = bare / REVIEWS_FILE
        if not path.exists():
            return {}
        return json.loads(path.read_text())

    def _save_review(self, bare: Path, review: ReviewRequest) -> None:
        reviews = self._load_reviews(bare)
        data = asdict(review)
        data["status"] = review.status.value
        data["impact"] = None
        reviews[review.id] = data
        (bare / REVIEWS_FILE).write_text(json.dumps(reviews, indent=2))

    def _review_from(self, data: dict) -> ReviewRequest:
        data = dict(data)
        data["status"] = ReviewStatus(data["status"])
        return ReviewRequest(**data)

    # Repositories ----------------------------------------------------------

    def create_repository(self, name: str, owner: str) -> Repository:
        repo = Repository(id=f"{owner}/{name}", name=name, url="", owner=owner, default_branch=self.default_branch)
        bare = self._bare(repo)
        if bare.exists():
            raise PermanentError(f"Repository already exists: {repo.id}")
        bare.parent.mkdir(parents=True, exist_ok=True)
        run_git(["init", "--quiet", "--bare", f"--initial-branch={self.default_branch}", str(bare)])
        logger.debug(f"Initialized bare repository {bare}")
        return Repository(id=repo.id, name=name, url=bare.as_uri(), owner=owner, default_branch=self.default_branch)

    def delete_repository(self, repo: Repository) -> None:
        bare = self._bare(repo)
        if bare.exists():
            shutil.rmtree(bare)

    def repository_exists(self, repo: Repository) -> bool:
        return self._bare(repo).exists()

    # Commits ---------------------------------------------------------------

    def commit(self, repo: Repository, files: Mapping[str, str], message: str, branch: Optional[str] = None) -> str:
        bare = self._require(repo)
        branch = branch or repo.default_branch
        if branch != repo.default_branch and not self._rev(bare, f"refs/heads/{branch}"):
            raise PermanentError(f"Branch not found: {branch}")

        with tempfile.TemporaryDirectory(prefix="gitorch-") as tmp:
            workdir = Path(tmp) / "work"
            self._clone(bare, workdir, branch)
            for path, content in files.items():
                target = workdir / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
            return self._commit_and_push(workdir, branch, message)

    def revert_commit(self, repo: Repository, commit_id: str, branch: Optional[str] = None) -> str:
        bare = self._require(repo)
        branch = branch or repo.default_branch
        parents = run_git(["--git-dir", str(bare), "rev-list", "--parents", "-n", "1", commit_id]).stdout.split()

        with tempfile.TemporaryDirectory(prefix="gitorch-") as tmp:
            workdir = Path(tmp) / "work"
            self._clone(bare, workdir, branch)
            revert = [*COMMITTER, "revert", "--no-edit"]
            if len(parents) > 2:
                revert += ["-m", "1"]
            run_git([*revert, commit_id], cwd=workdir)
            run_git(["push", "--quiet", "origin", f"HEAD:refs/heads/{branch}"], cwd=workdir)
            return run_git(["rev-parse", "HEAD"], cwd=workdir).stdout.strip()

    def list_files(self, repo: Repository, ref: str) -> dict[str, str]:
        bare = self._require(repo)
        names = run_git(["--git-dir", str(bare), "ls-tree", "-r", "--name-only", ref]).stdout.splitlines()
        return {
            name: run_git(["--git-dir", str(bare), "show", f"{ref}:{name}"]).stdout
            for name in names
        }

    # Branches --------------------------------------------------------------

    def get_branch(self, repo: Repository, name: str) -> Optional[Branch]:
        sha = self._rev(self._require(repo), f"refs/heads/{name}")
        if sha is None:
            return None
        return Branch(name=name, commit_id=sha)

    def create_branch(self, repo: Repository, name: str, from_ref: Optional[str] = None) -> Branch:
        bare = self._require(repo)
        source = from_ref or repo.default_branch
        sha = self._rev(bare, source)
        if sha is None:
            raise PermanentError(f"Cannot branch from {source}: ref not found")
        run_git(["--git-dir", str(bare), "branch", name, sha])
        return Branch(name=name, commit_id=sha)

    def delete_branch(self, repo: Repository, name: str) -> None:
        run_git(["--git-dir", str(self._require(repo)), "branch", "-D", name])

    # Review requests -------------------------------------------------------

    def open_review_request(self, repo: Repository, source_branch: str, target_branch: str,
                            title: str, description: str) -> ReviewRequest:
        bare = self._require(repo)
        review = ReviewRequest(
            id=str(len(self._load_reviews(bare)) + 1),
            title=title,
            description=description,
            repository=repo.name,
            source_branch=source_branch,
            target_branch=target_branch,
            base_commit=self._rev(bare, f"refs/heads/{target_branch}"),
        )
        self._save_review(bare, review)
        return review

    def get_review_request(self, repo: Repository, review_id: str) -> ReviewRequest:
        reviews = self._load_reviews(self._require(repo))
        if review_id not in reviews:
            raise PermanentError(f"Review request not found: {review_id}")
        return self._review_from(reviews[review_id])

    def close_review_request(self, repo: Repository, review: ReviewRequest) -> ReviewRequest:
        closed = self.get_review_request(repo, review.id).with_status(ReviewStatus.CLOSED)
        self._save_review(self._require(repo), closed)
        return closed

    def has_conflicts(self, repo: Repository, review: ReviewRequest) -> bool:
        bare = self._require(repo)
        with tempfile.TemporaryDirectory(prefix="gitorch-") as tmp:
            workdir = Path(tmp) / "work"
            self._clone(bare, workdir, review.target_branch)
            result = run_git(
                [*COMMITTER, "merge", "--no-commit", "--no-ff", f"origin/{review.source_branch}"],
                cwd=workdir,
                check=False,
            )
            return result.returncode != 0

    def merge_branches(self, repo: Repository, source_branch: str, target_branch: str,
                       message: Optional[str] = None) -> str:
        bare = self._require(repo)
        for branch in (source_branch, target_branch):
            if self._rev(bare, f"refs/heads/{branch}") is None:
                raise PermanentError(f"Branch not found: {branch}")

        with tempfile.TemporaryDirectory(prefix="gitorch-") as tmp:
            workdir = Path(tmp) / "work"
            self._clone(bare, workdir, target_branch)
            result = run_git(
                [*COMMITTER, "merge", "--no-ff", "-m",
                 message or f"Merge {source_branch} into {target_branch}",
                 f"origin/{source_branch}"],
                cwd=workdir,
                check=False,
            )
            if result.returncode != 0:
                conflicted = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=workdir).stdout.split()
                if conflicted:
                    raise PermanentError(f"Merge conflicts detected in files: {', '.join(conflicted)}")
                raise GitCommandError(["merge", f"origin/{source_branch}"], result.returncode,
                                      result.stderr or result.stdout)
            run_git(["push", "--quiet", "origin", f"HEAD:refs/heads/{target_branch}"], cwd=workdir)
            return run_git(["rev-parse", "HEAD"], cwd=workdir).stdout.strip()

    def merge_review_request(self, repo: Repository, review: ReviewRequest) -> str:
        merge_commit = self.merge_branches(
            repo, review.source_branch, review.target_branch,
            f"Merge review request #{review.id} from {review.source_branch}",
        )
        merged = self.get_review_request(repo, review.id).with_status(ReviewStatus.MERGED, merge_commit)
        self._save_review(self._require(repo), merged)
        return merge_commit
