"""
Unit Tests — Repo Service
=========================
The preparer only builds strings, so these tests never touch git.
"""
import os

import pytest

from ci_runner.core.config import RunnerConfig
from ci_runner.models.job import JobOptions, JobSpec
from ci_runner.services.repo_service import RepositoryPreparer, SetupPlan, reset_project_dir


def make_job(allow_fetch=False, **overrides):
    data = dict(
        id=9312,
        project_id=7,
        repo_url="https://github.com/randx/six.git",
        ref="2e008a711430a16092cd6a20c225807cb3f51db7",
        options=JobOptions(allow_git_fetch=allow_fetch),
    )
    data.update(overrides)
    return JobSpec(**data)


@pytest.fixture
def preparer(tmp_path):
    return RepositoryPreparer(RunnerConfig(builds_dir=str(tmp_path)))


# ---------------------------------------------------------------------------
# 1. Command strings
# ---------------------------------------------------------------------------
class TestCommands:

    def test_project_dir(self, preparer, tmp_path):
        assert preparer.project_dir(make_job()) == os.path.join(str(tmp_path), "project-7")

    def test_clone_command(self, preparer, tmp_path):
        assert preparer.clone_command(make_job()) == (
            f"cd {tmp_path} && "
            "git clone https://github.com/randx/six.git project-7 && "
            "cd project-7 && "
            "git checkout 2e008a711430a16092cd6a20c225807cb3f51db7"
        )

    def test_fetch_command(self, preparer, tmp_path):
        assert preparer.fetch_command(make_job()) == (
            f"cd {tmp_path}/project-7 && "
            "git reset --hard && "
            "git clean -fdx && "
            "git remote set-url origin https://github.com/randx/six.git && "
            "git fetch origin"
        )

    def test_checkout_command(self, preparer, tmp_path):
        assert preparer.checkout_command(make_job()) == (
            f"cd {tmp_path}/project-7 && "
            "git reset --hard && "
            "git checkout 2e008a711430a16092cd6a20c225807cb3f51db7"
        )

    def test_unsafe_values_are_quoted(self, preparer):
        job = make_job(ref="main; rm -rf /", repo_url="https://x/y z.git")
        assert "git checkout 'main; rm -rf /'" in preparer.checkout_command(job)
        assert "git clone 'https://x/y z.git' project-7" in preparer.clone_command(job)


# ---------------------------------------------------------------------------
# 2. Plan selection
# ---------------------------------------------------------------------------
class TestPlan:

    def test_no_checkout_means_clone(self, preparer):
        plan = preparer.plan(make_job(allow_fetch=True))
        assert isinstance(plan, SetupPlan)
        assert plan.fresh_clone is True
        assert "git clone" in plan.commands[0]

    def test_existing_checkout_with_fetch_allowed(self, preparer):
        job = make_job(allow_fetch=True)
        os.makedirs(os.path.join(preparer.project_dir(job), ".git"))

        plan = preparer.plan(job)

        assert plan.fresh_clone is False
        assert "git fetch origin" in plan.commands[0]
        assert not any("git clone" in c for c in plan.commands)

    def test_existing_checkout_without_fetch_permission_clones(self, preparer):
        job = make_job(allow_fetch=False)
        os.makedirs(os.path.join(preparer.project_dir(job), ".git"))

        plan = preparer.plan(job)

        assert plan.fresh_clone is True
        assert "git clone" in plan.commands[0]

    def test_dir_without_git_clones(self, preparer):
        job = make_job(allow_fetch=True)
        os.makedirs(preparer.project_dir(job))
        assert preparer.plan(job).fresh_clone is True

    def test_checkout_always_last(self, preparer):
        job = make_job(allow_fetch=True)
        clone_plan = preparer.plan(job)
        os.makedirs(os.path.join(preparer.project_dir(job), ".git"))
        fetch_plan = preparer.plan(job)

        for plan in (clone_plan, fetch_plan):
            assert len(plan.commands) == 2
            assert plan.commands[-1] == preparer.checkout_command(job)

    def test_repeated_planning_keeps_fetching(self, preparer):
        job = make_job(allow_fetch=True)
        os.makedirs(os.path.join(preparer.project_dir(job), ".git"))
        first = preparer.plan(job)
        second = preparer.plan(job)
        assert first == second
        assert first.fresh_clone is False


# ---------------------------------------------------------------------------
# 3. Workspace reset
# ---------------------------------------------------------------------------
class TestResetProjectDir:

    def test_wipes_existing_content(self, tmp_path):
        project = tmp_path / "project-1"
        (project / "stale" / "deep").mkdir(parents=True)
        (project / "stale" / "deep" / "file.txt").write_text("old")

        reset_project_dir(str(project))

        assert project.is_dir()
        assert list(project.iterdir()) == []

    def test_creates_missing_dir(self, tmp_path):
        project = tmp_path / "nested" / "project-2"
        reset_project_dir(str(project))
        assert project.is_dir()
