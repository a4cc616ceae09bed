"""
Process Runner
==============
Runs one shell command on the host and records its output in the job trace.

Lifecycle per command:
    1. Echo the command into the trace
    2. Spawn `bash --login -c <command>` in the project directory,
       stdout + stderr redirected into a scoped temp file
    3. Wait up to the timeout; on expiry append TIMEOUT and escalate signals
    4. Read the temp file into the trace and release it (every exit path)

The runner never raises for command-level problems. Spawn errors and other
surprises are written to the trace and reported as a failed CommandResult.
"""
import os
import time
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Mapping, Optional

from ci_runner.core.config import RunnerConfig
from ci_runner.core.constants import CI_SERVER, CI_SERVER_NAME, TIMEOUT_MARKER
from ci_runner.executor.termination import (
    DEFAULT_TERMINATION_POLICY,
    TerminationPolicy,
    terminate_process,
)
from ci_runner.models.job import JobSpec
from ci_runner.models.run_state import RunState

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """
    Outcome of a single host command.

    Fields
    ------
    command : str
        The stripped command string that was run.
    exit_code : int | None
        Process exit code. None if the process never exited on its own
        (timeout) or never started (error).
    output : bytes
        Combined stdout + stderr captured from the temp file.
    timed_out : bool
        True if the wait expired and the process was terminated.
    error : str | None
        Message of an unexpected spawn/runtime error.
    """
    command: str
    exit_code: Optional[int] = None
    output: bytes = b""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


def ci_variables(job: JobSpec) -> dict[str, str]:
    """CI variables exported to every command, host or container."""
    variables = {
        "CI_SERVER": CI_SERVER,
        "CI_SERVER_NAME": CI_SERVER_NAME,
        "CI_BUILD_REF": job.ref,
        "CI_BUILD_BEFORE_SHA": job.before_sha,
        "CI_BUILD_REF_NAME": job.ref_name,
        "CI_BUILD_ID": str(job.id),
    }
    return {k: v for k, v in variables.items() if v is not None}


def build_command_env(
    job: JobSpec,
    config: RunnerConfig,
    base_env: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Host environment minus tool-specific leakage, plus the CI variables.

    Variables whose names start with any of ``config.clean_env_prefixes``
    are dropped so a runner started from a virtualenv or bundle does not
    impose it on the project's own tooling.
    """
    if base_env is None:
        base_env = os.environ
    prefixes = tuple(config.clean_env_prefixes)
    env = {k: v for k, v in base_env.items() if not k.startswith(prefixes)}
    env.update(ci_variables(job))
    return env


class ProcessRunner:

    def __init__(self, policy: TerminationPolicy = DEFAULT_TERMINATION_POLICY) -> None:
        self.policy = policy

    def execute(
        self,
        command: str,
        working_dir: str,
        env: Mapping[str, str],
        timeout: float,
        run_state: RunState,
    ) -> CommandResult:
        """
        Run ``command`` through a login shell and append its output to the trace.

        Parameters
        ----------
        command : str
            Shell command string; surrounding whitespace is stripped.
        working_dir : str
            Directory the shell starts in.
        env : Mapping[str, str]
            Complete environment for the child (see ``build_command_env``).
        timeout : float
            Seconds to wait before terminating the process.
        run_state : RunState
            Receives the trace output. ``tmp_file_path`` points at the live
            output file while the command runs.

        Returns
        -------
        CommandResult
            Always returned; ``success`` is True only for exit code 0.
        """
        command = command.strip()
        result = CommandResult(command=command)
        sink = run_state.output
        sink.append_text(f"\n{command}\n")

        start_time = time.monotonic()
        logger.info("Running command | cwd=%s | timeout=%ss | cmd=%s", working_dir, timeout, command)

        with tempfile.NamedTemporaryFile(prefix="child-output-") as tmp_file:
            run_state.tmp_file_path = tmp_file.name
            try:
                process = subprocess.Popen(
                    ["bash", "--login", "-c", command],
                    cwd=working_dir,
                    env=dict(env),
                    stdin=subprocess.DEVNULL,
                    stdout=tmp_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
                try:
                    result.exit_code = process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    result.timed_out = True
                    sink.append_text(TIMEOUT_MARKER)
                    logger.warning("Command timed out after %ss: %s", timeout, command)
                    terminate_process(process, self.policy)

            except Exception as e:
                result.error = str(e) or type(e).__name__
                sink.append_text(result.error)
                logger.exception("Command could not be run: %s", command)

            finally:
                run_state.tmp_file_path = None
                tmp_file.seek(0)
                result.output = tmp_file.read()
                sink.append_bytes(result.output)

        logger.info(
            "Command finished | exit=%s | timed_out=%s | time=%.2fs",
            result.exit_code, result.timed_out, time.monotonic() - start_time,
        )
        return result
