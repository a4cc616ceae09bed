"""
Termination Policy
==================
Escalating shutdown of a timed-out host process or container.

Each step sends one signal and then waits up to ``grace_seconds`` for the
target to exit. The first step the target survives hands over to the next,
harsher one. The steps are data, so the runner config can swap them out.
"""
import os
import signal
import logging
import subprocess
from dataclasses import dataclass

from docker.errors import APIError
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TerminationStep:
    signal: signal.Signals
    grace_seconds: float


@dataclass(frozen=True)
class TerminationPolicy:
    steps: tuple[TerminationStep, ...]

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("termination policy needs at least one step")


DEFAULT_TERMINATION_POLICY = TerminationPolicy(steps=(
    TerminationStep(signal.SIGINT, 2.0),
    TerminationStep(signal.SIGTERM, 3.0),
    TerminationStep(signal.SIGKILL, 2.0),
))


def parse_signal(value) -> signal.Signals:
    """
    Resolve a signal from a config value.

    Accepts a number (``9``), a bare name (``"KILL"``) or a full
    name (``"SIGKILL"``), case-insensitive.
    """
    if isinstance(value, int):
        return signal.Signals(value)
    name = str(value).strip().upper()
    if name.isdigit():
        return signal.Signals(int(name))
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"Unknown signal: {value!r}") from None


def terminate_process(process: subprocess.Popen, policy: TerminationPolicy) -> bool:
    """
    Signal the process group of ``process`` following ``policy``.

    The process must have been started with ``start_new_session=True`` so
    its pid is also the group id; this takes the login shell's children
    down with it.

    Returns True once the process has exited. When every step fails the
    process itself is killed and reaped, and False is returned.
    """
    for step in policy.steps:
        if process.poll() is not None:
            return True
        logger.warning(
            "Terminating process | pid=%d | signal=%s | grace=%.1fs",
            process.pid, step.signal.name, step.grace_seconds,
        )
        try:
            os.killpg(process.pid, step.signal)
        except ProcessLookupError:
            return True
        try:
            process.wait(timeout=step.grace_seconds)
            return True
        except subprocess.TimeoutExpired:
            continue

    logger.error("Process %d survived every termination step", process.pid)
    process.kill()
    process.wait()
    return False


def terminate_container(container, policy: TerminationPolicy) -> bool:
    """Kill ``container`` with escalating signals. Returns True once it stopped."""
    for step in policy.steps:
        logger.warning(
            "Killing container | id=%s | signal=%s | grace=%.1fs",
            container.short_id, step.signal.name, step.grace_seconds,
        )
        try:
            container.kill(signal=step.signal.name)
        except APIError:
            # 409 from the engine: the container is no longer running
            return True
        try:
            container.wait(timeout=step.grace_seconds)
            return True
        except (ReadTimeout, RequestsConnectionError):
            continue

    logger.error("Container %s survived every termination step", container.short_id)
    return False
