"""Pydantic request models for the HTTP API.

Responses reuse the `to_dict()` shapes of the domain records, so only the
inputs are modelled here.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from snaptriage._types import ExecutionOptions, RunRequest


class AnalyzeRequest(BaseModel):
    """Body of POST /analyze."""

    model_config = ConfigDict(populate_by_name=True)

    log_text: str = Field(alias="logText")


class SnapOptions(BaseModel):
    """Execution options of POST /snap."""

    model_config = ConfigDict(populate_by_name=True)

    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds", gt=0)
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    include_git: bool = Field(default=False, alias="includeGit")


class SnapRequest(BaseModel):
    """Body of POST /snap."""

    model_config = ConfigDict(populate_by_name=True)

    repo_path: str = Field(alias="repoPathOnHost", min_length=1)
    command: str
    options: SnapOptions = Field(default_factory=SnapOptions)

    def to_run_request(self) -> RunRequest:
        return RunRequest(
            repo_path=self.repo_path,
            command=self.command,
            options=ExecutionOptions(
                timeout_seconds=self.options.timeout_seconds,
                workdir=self.options.workdir,
                env=dict(self.options.env),
                include_git=self.options.include_git,
            ),
        )
