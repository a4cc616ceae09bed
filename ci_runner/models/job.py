"""
Job Model
=========
Pydantic model for the immutable description of one CI job, as handed over
by the scheduler.

Fields:
    id              — build id, exported as CI_BUILD_ID
    project_id      — scopes the checkout directory (project-<id>)
    repo_url        — repository to clone/fetch
    ref             — commit to check out, exported as CI_BUILD_REF
    ref_name        — branch/tag display name, exported as CI_BUILD_REF_NAME
    before_sha      — previous commit, exported as CI_BUILD_BEFORE_SHA
    commands        — ordered shell commands (list, or newline-separated text)
    options         — use_docker / allow_git_fetch switches
    timeout         — per-job override in seconds; None means the runner default
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    use_docker: bool = False
    allow_git_fetch: bool = False


class JobSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    project_id: int
    repo_url: str
    ref: str
    ref_name: Optional[str] = None
    before_sha: Optional[str] = None
    commands: tuple[str, ...] = ()
    options: JobOptions = Field(default_factory=JobOptions)
    timeout: Optional[int] = None

    @field_validator("commands", mode="before")
    @classmethod
    def _split_commands(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.splitlines()
        if isinstance(value, (list, tuple)):
            return tuple(
                c.strip() if isinstance(c, str) else c
                for c in value
                if not isinstance(c, str) or c.strip()
            )
        return value

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("timeout must be > 0")
        return value

    @classmethod
    def from_payload(cls, data: dict) -> "JobSpec":
        """
        Build a JobSpec from the scheduler's wire payload.

        The scheduler sends ``use_docker`` under ``opts`` and
        ``allow_git_fetch`` at the top level; a nested ``options`` map is
        accepted too. Unknown keys are ignored.
        """
        options = dict(data.get("options") or {})
        opts = data.get("opts") or {}
        if "use_docker" in opts:
            options["use_docker"] = opts["use_docker"]
        if "allow_git_fetch" in data:
            options["allow_git_fetch"] = data["allow_git_fetch"]

        return cls(
            id=data["id"],
            project_id=data["project_id"],
            repo_url=data["repo_url"],
            ref=data["ref"],
            ref_name=data.get("ref_name"),
            before_sha=data.get("before_sha"),
            commands=data.get("commands"),
            options=JobOptions(**{k: bool(v) for k, v in options.items()
                                  if k in JobOptions.model_fields}),
            timeout=data.get("timeout"),
        )
