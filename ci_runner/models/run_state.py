"""
Run State
=========
Mutable record of one job execution, owned by the orchestrator for the
duration of a single run.

Lifecycle: waiting -> running -> success | failed. Terminal states never
change again.
"""
import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ci_runner.services.output_sink import OutputSink, encode_output

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


_TRANSITIONS = {
    BuildState.WAITING: {BuildState.RUNNING},
    BuildState.RUNNING: {BuildState.SUCCESS, BuildState.FAILED},
    BuildState.SUCCESS: set(),
    BuildState.FAILED: set(),
}


class InvalidTransition(ValueError):
    """Raised on a lifecycle transition that is not a forward move."""


@dataclass
class RunState:
    state: BuildState = BuildState.WAITING
    output: OutputSink = field(default_factory=OutputSink)
    # Output file of the command currently running on the host, if any
    tmp_file_path: Optional[str] = None

    def transition(self, new_state: BuildState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("State transition | %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    @property
    def completed(self) -> bool:
        return self.success or self.failed

    @property
    def success(self) -> bool:
        return self.state is BuildState.SUCCESS

    @property
    def failed(self) -> bool:
        return self.state is BuildState.FAILED

    @property
    def running(self) -> bool:
        return self.state is BuildState.RUNNING

    def tmp_file_output(self) -> str:
        path = self.tmp_file_path
        if not path or not os.access(path, os.R_OK):
            return ""
        with open(path, "rb") as f:
            return encode_output(f.read())

    def trace(self) -> str:
        """
        Accumulated trace plus whatever the running command has written so far.

        Safe to call from another thread while a build is in progress.
        """
        try:
            return self.output.getvalue() + self.tmp_file_output()
        except OSError:
            # The temp file was released between the check and the read
            return self.output.getvalue()
