"""Recently changed files, as reported by version control."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Set

import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

logger = structlog.get_logger()


class GitChanges:
    """
    Lists files touched in the working tree, the index, untracked files and the
    most recent commits. Paths come back relative to the scan root.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.repo: Optional[Repo] = None
        try:
            self.repo = Repo(self.root, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            logger.debug("git_repo_unavailable", root=str(self.root), error=str(e))

    @property
    def available(self) -> bool:
        return self.repo is not None and self.repo.working_tree_dir is not None

    def changed_files(self, recent_commits: int = 1) -> Set[str]:
        if not self.available:
            return set()

        paths: Set[str] = set()
        try:
            paths.update(d.a_path for d in self.repo.index.diff(None))
            if self.repo.head.is_valid():
                paths.update(d.a_path for d in self.repo.index.diff("HEAD"))
                for commit in self.repo.iter_commits(max_count=max(recent_commits, 0)):
                    paths.update(commit.stats.files.keys())
            paths.update(self.repo.untracked_files)
        except (GitCommandError, ValueError) as e:
            logger.warning("git_changes_failed", root=str(self.root), error=str(e))
            return set()

        return self._relative(p for p in paths if p)

    def _relative(self, repo_paths: Iterable[str]) -> Set[str]:
        work_tree = Path(self.repo.working_tree_dir).resolve()
        result = set()
        for repo_path in repo_paths:
            absolute = work_tree / repo_path
            try:
                result.add(absolute.relative_to(self.root).as_posix())
            except ValueError:
                continue
        return result
