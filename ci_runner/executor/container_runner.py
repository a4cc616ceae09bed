"""
Container Runner
================
Runs a job's command list as a chain of ephemeral Docker containers.

CHAIN STRATEGY:
    - The chain starts from the image built from the project's Dockerfile.
    - Each command gets a fresh container created from the chain head.
    - After the command, the container's filesystem diff is compared with the
      baseline every new container shows (/dev, /dev/kmsg). Any extra change
      is committed as a new image that becomes the head; otherwise the head
      is reused and no layer is added.
    - One wall-clock budget covers the whole chain, not each command.
    - The chain stops at the first non-zero exit, timeout or engine error.

The runner only records what it creates (ContainerChain). Removing those
containers and images is the ResourceReaper's job.
"""
import time
import shlex
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from docker.errors import DockerException
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from ci_runner.core.constants import BASELINE_FS_CHANGES, TIMEOUT_MARKER
from ci_runner.executor.termination import (
    DEFAULT_TERMINATION_POLICY,
    TerminationPolicy,
    terminate_container,
)
from ci_runner.services.output_sink import OutputSink

logger = logging.getLogger(__name__)


@dataclass
class ContainerChain:
    """
    Everything the engine created for one containerized run.

    images[0] is the image built from the Dockerfile; images[-1] is the head
    that the next command starts from.
    """
    images: list = field(default_factory=list)
    containers: list = field(default_factory=list)

    @property
    def head(self):
        if not self.images:
            raise LookupError("container chain has no base image")
        return self.images[-1]


@dataclass
class ContainerStepResult:
    command: str
    image_id: str
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    committed_image_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChainResult:
    success: bool = False
    timed_out: bool = False
    failed_command: Optional[str] = None
    steps: List[ContainerStepResult] = field(default_factory=list)


def filesystem_changes(container) -> set[tuple[str, int]]:
    """Container diff minus the changes every fresh container reports."""
    changes = container.diff() or []
    return {(c["Path"], c["Kind"]) for c in changes} - BASELINE_FS_CHANGES


class ContainerRunner:

    def __init__(
        self,
        client,
        policy: TerminationPolicy = DEFAULT_TERMINATION_POLICY,
        layer_warning: int = 100,
    ) -> None:
        self.client = client
        self.policy = policy
        self.layer_warning = layer_warning

    def execute_chain(
        self,
        commands: Sequence[str],
        chain: ContainerChain,
        timeout_seconds: float,
        sink: OutputSink,
        environment: Optional[Mapping[str, str]] = None,
    ) -> ChainResult:
        """
        Run ``commands`` in order, threading the chain head between them.

        Parameters
        ----------
        commands : Sequence[str]
            User commands; each is shell-tokenized into the container argv.
        chain : ContainerChain
            Must already hold the base image. Created containers and committed
            images are appended to it as they appear.
        timeout_seconds : float
            Shared budget, measured from the start of this call.
        sink : OutputSink
            Receives command echoes, markers and container output.
        environment : Mapping[str, str] | None
            Environment for every container.

        Returns
        -------
        ChainResult
            ``success`` is True only if every container exited 0 in time.
        """
        result = ChainResult()
        start_time = time.monotonic()
        warned = False

        for command in commands:
            command = command.strip()
            remaining = timeout_seconds - (time.monotonic() - start_time)
            if remaining <= 0:
                logger.warning("Chain budget exhausted before: %s", command)
                sink.append_text(TIMEOUT_MARKER)
                result.timed_out = True
                result.failed_command = command
                return result

            step = self._run_step(command, chain, remaining, sink, environment)
            result.steps.append(step)

            if step.timed_out or step.error is not None or step.exit_code != 0:
                result.timed_out = step.timed_out
                result.failed_command = command
                return result

            if not warned and len(chain.images) > self.layer_warning:
                logger.warning(
                    "Image chain has %d layers (warning threshold %d)",
                    len(chain.images), self.layer_warning,
                )
                warned = True

        result.success = True
        return result

    def _run_step(
        self,
        command: str,
        chain: ContainerChain,
        remaining: float,
        sink: OutputSink,
        environment: Optional[Mapping[str, str]],
    ) -> ContainerStepResult:
        head = chain.head
        step = ContainerStepResult(command=command, image_id=head.id)
        sink.append_text(f"\n{command}\n")

        container = None
        try:
            container = self.client.containers.create(
                image=head.id,
                command=shlex.split(command),
                environment=dict(environment or {}),
            )
            chain.containers.append(container)
            step.container_id = container.id

            logger.info(
                "Starting container | id=%s | image=%s | remaining=%.1fs | cmd=%s",
                container.short_id, head.short_id, remaining, command,
            )
            try:
                container.start()
                status = container.wait(timeout=remaining)
                step.exit_code = status.get("StatusCode", -1)
            except (ReadTimeout, RequestsConnectionError):
                step.timed_out = True
                sink.append_text(TIMEOUT_MARKER)
                logger.warning("Container %s timed out: %s", container.short_id, command)
                terminate_container(container, self.policy)
            finally:
                self._drain(container, sink)

            if step.timed_out:
                return step

            if step.exit_code != 0:
                logger.info("Container %s exited %s", container.short_id, step.exit_code)

            if filesystem_changes(container):
                image = container.commit()
                chain.images.append(image)
                step.committed_image_id = image.id
                logger.info("Committed layer | image=%s | from=%s", image.short_id, container.short_id)
            else:
                logger.debug("No filesystem changes, reusing head %s", head.short_id)

        except (DockerException, ValueError) as e:
            # ValueError comes from shlex on unbalanced quotes
            step.error = str(e) or type(e).__name__
            sink.append_text(step.error)
            logger.error("Container step failed | cmd=%s | error=%s", command, step.error)

        return step

    @staticmethod
    def _drain(container, sink: OutputSink) -> None:
        stdout = container.attach(stdout=True, stderr=False, logs=True, stream=False)
        sink.append_bytes(stdout or b"")
        stderr = container.attach(stdout=False, stderr=True, logs=True, stream=False)
        sink.append_bytes(stderr or b"")
