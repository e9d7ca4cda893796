from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


AgentDecision = Literal["INLINE_SUGGESTIONS", "PULL_REQUEST"]
AGENT_DECISIONS: tuple[AgentDecision, ...] = ("INLINE_SUGGESTIONS", "PULL_REQUEST")


@dataclass(frozen=True)
class PullRequestInfo:
    owner: str
    repo: str
    number: int
    head_sha: str
    head_ref: str
    base_ref: str
    html_url: str
    description: str | None = None

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    id: int
    title: str
    body: str
    state: str
    merged: bool
    html_url: str
    head_sha: str
    head_ref: str
    head_repo_id: int | None
    base_sha: str
    base_ref: str
    base_repo_id: int | None
    author_login: str | None = None
    author_id: int | None = None

    def to_info(self, owner: str, repo: str) -> PullRequestInfo:
        return PullRequestInfo(
            owner=owner,
            repo=repo,
            number=self.number,
            head_sha=self.head_sha,
            head_ref=self.head_ref,
            base_ref=self.base_ref,
            html_url=self.html_url,
            description=self.body or None,
        )


@dataclass(frozen=True)
class PullRequest:
    number: int
    id: int
    html_url: str
    head_ref: str = ""


@dataclass(frozen=True)
class WorkflowRun:
    run_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    head_sha: str
    head_branch: str
    run_attempt: int | None
    created_at: str


@dataclass(frozen=True)
class WorkflowJobStep:
    name: str
    status: str
    conclusion: str | None


@dataclass(frozen=True)
class WorkflowJob:
    job_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str | None
    steps: tuple[WorkflowJobStep, ...] = ()

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.job_id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "html_url": self.html_url,
            "steps": [
                {"name": step.name, "status": step.status, "conclusion": step.conclusion}
                for step in self.steps
            ],
        }


@dataclass(frozen=True)
class FailedStepSummary:
    name: str
    status: str
    conclusion: str | None


@dataclass(frozen=True)
class FailedJobSummary:
    name: str
    conclusion: str | None
    html_url: str | None
    failed_steps: tuple[FailedStepSummary, ...]

    def to_payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "conclusion": self.conclusion,
            "html_url": self.html_url,
            "failed_steps": [
                {"name": step.name, "status": step.status, "conclusion": step.conclusion}
                for step in self.failed_steps
            ],
        }


@dataclass(frozen=True)
class CIFailureInfo:
    workflow_run_id: int
    workflow_run_url: str
    failed_jobs: tuple[FailedJobSummary, ...]
    failure_logs: str


@dataclass(frozen=True)
class AgentCompletionOutput:
    decision: AgentDecision
    reasoning: str


@dataclass(frozen=True)
class DiffHunk:
    start_line: int
    line_count: int
    content: str
    suggested_content: str


@dataclass(frozen=True)
class FileChange:
    path: str
    hunks: tuple[DiffHunk, ...]


@dataclass(frozen=True)
class ReviewComment:
    path: str
    line: int
    body: str


@dataclass(frozen=True)
class FollowupPrResult:
    number: int
    id: int
    html_url: str


@dataclass(frozen=True)
class PullRequestDiff:
    diff_summary: str
    full_diff: str
