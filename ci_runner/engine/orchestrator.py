"""
Build Orchestrator
==================
Drives one CI job from `waiting` to a terminal `success` / `failed` state.

Flow:
    1. waiting -> running
    2. RepositoryPreparer picks clone or fetch; a fresh clone wipes the
       project directory first
    3. Bare mode: setup + user commands run on the host one by one,
       stopping at the first failure. Each command gets the full timeout.
    4. Docker mode: setup commands run on the host, the Dockerfile is built,
       then user commands run in a container chain sharing one timeout
       budget. The ResourceReaper cleans the chain on every exit path.
    5. running -> success | failed

The orchestrator never raises to its caller. Every failure, including
engine and setup errors, ends as `failed`; callers read `state` and `trace`.
"""
import os
import time
import logging
from typing import Optional, Sequence

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException

from ci_runner.core.config import RunnerConfig
from ci_runner.core.constants import DOCKERFILE_NAME
from ci_runner.executor.container_runner import ContainerChain, ContainerRunner
from ci_runner.executor.process_runner import (
    ProcessRunner,
    build_command_env,
    ci_variables,
)
from ci_runner.executor.resource_reaper import ResourceReaper
from ci_runner.models.job import JobSpec
from ci_runner.models.run_state import BuildState, RunState
from ci_runner.services.repo_service import RepositoryPreparer, reset_project_dir

logger = logging.getLogger(__name__)


class ContainerSetupError(RuntimeError):
    """Fatal problem before the container chain could start."""


class BuildOrchestrator:
    """
    Runs a single job at a time and owns its RunState while it does.

    ``run_state`` is replaced at the start of every run and may be polled
    from another thread for live progress (``run_state.trace()``).
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        process_runner: Optional[ProcessRunner] = None,
        docker_client=None,
    ) -> None:
        self.config = config or RunnerConfig()
        self.preparer = RepositoryPreparer(self.config)
        self.process_runner = process_runner or ProcessRunner(self.config.termination_policy)
        self.docker_client = docker_client
        self.run_state = RunState()

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------
    @property
    def state(self) -> BuildState:
        return self.run_state.state

    @property
    def trace(self) -> str:
        return self.run_state.trace()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self, job: JobSpec) -> BuildState:
        run_state = RunState()
        self.run_state = run_state
        run_state.transition(BuildState.RUNNING)

        timeout = job.timeout or self.config.default_timeout
        mode = "docker" if job.options.use_docker else "bare"
        start_time = time.monotonic()
        logger.info(
            "Build started | id=%s | project=%s | ref=%s | mode=%s | timeout=%ss",
            job.id, job.project_id, job.ref, mode, timeout,
        )

        try:
            plan = self.preparer.plan(job)
            if plan.fresh_clone:
                reset_project_dir(self.preparer.project_dir(job))

            if job.options.use_docker:
                success = self._run_containerized(job, plan.commands, timeout)
            else:
                success = self._run_bare(job, plan.commands, timeout)

        except Exception as e:
            logger.exception("Unexpected build error | id=%s", job.id)
            run_state.output.append_text(f"\n{e}\n")
            success = False

        run_state.transition(BuildState.SUCCESS if success else BuildState.FAILED)
        logger.info(
            "Build finished | id=%s | state=%s | time=%.2fs",
            job.id, run_state.state.value, time.monotonic() - start_time,
        )
        return run_state.state

    # ------------------------------------------------------------------
    # Bare mode
    # ------------------------------------------------------------------
    def _run_bare(self, job: JobSpec, setup_commands: Sequence[str], timeout: int) -> bool:
        env = build_command_env(job, self.config)
        project_dir = self.preparer.project_dir(job)

        for command in list(setup_commands) + list(job.commands):
            result = self.process_runner.execute(
                command, project_dir, env, timeout, self.run_state,
            )
            if not result.success:
                logger.info("Stopping at failed command: %s", result.command)
                return False
        return True

    # ------------------------------------------------------------------
    # Docker mode
    # ------------------------------------------------------------------
    def _connect_engine(self):
        client = self.docker_client
        try:
            if client is None:
                client = docker.from_env()
            client.ping()
        except DockerException as e:
            raise ContainerSetupError(f"docker daemon not found: {e}") from e
        return client

    def _run_setup_commands(self, job: JobSpec, setup_commands: Sequence[str], timeout: int) -> None:
        env = build_command_env(job, self.config)
        project_dir = self.preparer.project_dir(job)
        for command in setup_commands:
            result = self.process_runner.execute(
                command, project_dir, env, timeout, self.run_state,
            )
            if not result.success:
                raise ContainerSetupError(f"setup command failed: {result.command}")

    def _build_base_image(self, client, project_dir: str):
        if not os.path.isfile(os.path.join(project_dir, DOCKERFILE_NAME)):
            raise ContainerSetupError(f"No {DOCKERFILE_NAME} found in {project_dir}")

        logger.info("Building base image from %s", project_dir)
        image, build_logs = client.images.build(path=project_dir, rm=True, forcerm=True)
        for chunk in build_logs:
            line = chunk.get("stream", "").rstrip()
            if line:
                logger.debug("build | %s", line)
        logger.info("Base image built | image=%s", image.short_id)
        return image

    def _run_containerized(self, job: JobSpec, setup_commands: Sequence[str], timeout: int) -> bool:
        chain = ContainerChain()
        success = False
        try:
            client = self._connect_engine()
            with ResourceReaper(client).reaping(chain):
                self._run_setup_commands(job, setup_commands, timeout)
                chain.images.append(self._build_base_image(client, self.preparer.project_dir(job)))
                runner = ContainerRunner(
                    client,
                    policy=self.config.termination_policy,
                    layer_warning=self.config.image_layer_warning,
                )
                result = runner.execute_chain(
                    job.commands, chain, timeout, self.run_state.output,
                    environment=ci_variables(job),
                )
                success = result.success

        except (ContainerSetupError, DockerException, RequestException) as e:
            # A cleanup error raised after the chain finished leaves `success`
            # as the chain set it.
            logger.error("Docker build error | id=%s | error=%s", job.id, e)

        return success
