"""
Repo Service
============
Builds the shell commands that bring a job's working tree to the requested
ref, and manages the on-disk checkout directory.

Philosophy:
    - One checkout per project: <builds_dir>/project-<project_id>/
    - Reuse it via fetch when allowed and a .git directory is present.
    - Otherwise wipe it and clone from scratch.
    - The preparer never runs git itself. Commands are plain strings executed
      by the ProcessRunner like any user command, so their output lands in
      the trace.
"""
import os
import shlex
import shutil
import logging
from dataclasses import dataclass

from ci_runner.core.config import RunnerConfig
from ci_runner.core.constants import PROJECT_DIR_PREFIX
from ci_runner.models.job import JobSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupPlan:
    """
    Setup commands for one job.

    fresh_clone is True when the caller must wipe and recreate the project
    directory before running the commands.
    """
    commands: tuple[str, ...]
    fresh_clone: bool


class RepositoryPreparer:

    def __init__(self, config: RunnerConfig) -> None:
        self.builds_dir = config.builds_dir

    def project_dir(self, job: JobSpec) -> str:
        return os.path.join(self.builds_dir, f"{PROJECT_DIR_PREFIX}{job.project_id}")

    def repo_exists(self, job: JobSpec) -> bool:
        return os.path.exists(os.path.join(self.project_dir(job), ".git"))

    def clone_command(self, job: JobSpec) -> str:
        dir_name = f"{PROJECT_DIR_PREFIX}{job.project_id}"
        return " && ".join([
            f"cd {shlex.quote(self.builds_dir)}",
            f"git clone {shlex.quote(job.repo_url)} {dir_name}",
            f"cd {dir_name}",
            f"git checkout {shlex.quote(job.ref)}",
        ])

    def fetch_command(self, job: JobSpec) -> str:
        return " && ".join([
            f"cd {shlex.quote(self.project_dir(job))}",
            "git reset --hard",
            "git clean -fdx",
            f"git remote set-url origin {shlex.quote(job.repo_url)}",
            "git fetch origin",
        ])

    def checkout_command(self, job: JobSpec) -> str:
        return " && ".join([
            f"cd {shlex.quote(self.project_dir(job))}",
            "git reset --hard",
            f"git checkout {shlex.quote(job.ref)}",
        ])

    def plan(self, job: JobSpec) -> SetupPlan:
        """
        Choose fetch vs clone and return the setup command sequence.

        Fetch is used only when the checkout already has a .git directory and
        the job allows fetching. Checkout always comes last.
        """
        if self.repo_exists(job) and job.options.allow_git_fetch:
            logger.info("Reusing checkout via fetch | project=%s", job.project_id)
            first, fresh = self.fetch_command(job), False
        else:
            logger.info("Fresh clone | project=%s | repo=%s", job.project_id, job.repo_url)
            first, fresh = self.clone_command(job), True
        return SetupPlan(commands=(first, self.checkout_command(job)), fresh_clone=fresh)


def reset_project_dir(path: str) -> None:
    """Wipe ``path`` and recreate it empty."""
    if os.path.exists(path):
        logger.info("Wiping project directory: %s", path)
        shutil.rmtree(path)
    os.makedirs(path, exist_ok=True)
