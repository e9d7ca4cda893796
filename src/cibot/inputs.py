from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from cibot.ci_context import collect_failed_jobs
from cibot.eligibility import is_pull_request_eligible_for_fix
from cibot.events import EventError, WorkflowRunEvent
from cibot.github_gateway import GitHubApiError, GitHubGateway
from cibot.models import CIFailureInfo, PullRequestInfo
from cibot.observability import log_event, log_warning
from cibot.shell import CommandError


LOGGER = logging.getLogger("cibot.inputs")


@dataclass(frozen=True)
class AgentRunnerInput:
    pull_request: PullRequestInfo
    head_repo_id: int | None
    base_repo_id: int | None
    ci_failure: CIFailureInfo | None
    dry_run: bool = False
    output_dir: Path | None = None
    cost_limit: float | None = None
    timeout_seconds: float | None = None


def fetch_ci_failure_info(github: GitHubGateway, run_id: int) -> CIFailureInfo | None:
    """Load failed jobs and logs for `run_id`; None when the run did not fail or cannot be read."""
    try:
        workflow_run = github.get_workflow_run(run_id)
        if workflow_run.conclusion != "failure":
            log_warning(
                LOGGER,
                "workflow_run_not_failed",
                run_id=run_id,
                conclusion=workflow_run.conclusion,
            )
            return None
        failed_jobs = collect_failed_jobs(github.list_workflow_jobs(run_id))
        failure_logs = github.get_failed_run_logs(run_id)
    except (GitHubApiError, CommandError) as exc:
        log_warning(
            LOGGER,
            "ci_failure_info_unavailable",
            run_id=run_id,
            error_type=type(exc).__name__,
        )
        return None
    return CIFailureInfo(
        workflow_run_id=run_id,
        workflow_run_url=workflow_run.html_url,
        failed_jobs=failed_jobs,
        failure_logs=failure_logs,
    )


def build_input_from_cli(
    github: GitHubGateway,
    *,
    pr_number: int,
    workflow_run_id: int | None = None,
    dry_run: bool = False,
    output_dir: Path | None = None,
    cost_limit: float | None = None,
    timeout_minutes: int | None = None,
) -> AgentRunnerInput:
    snapshot = github.get_pull_request(pr_number)
    if workflow_run_id is None:
        latest = github.find_latest_failed_workflow_run(snapshot.head_sha)
        if latest is None:
            log_event(
                LOGGER,
                "failed_workflow_run_not_found",
                pr_number=pr_number,
                head_sha=snapshot.head_sha[:7],
            )
        else:
            workflow_run_id = latest.run_id
            log_event(
                LOGGER,
                "failed_workflow_run_found",
                pr_number=pr_number,
                run_id=workflow_run_id,
            )

    ci_failure = (
        fetch_ci_failure_info(github, workflow_run_id) if workflow_run_id is not None else None
    )
    return AgentRunnerInput(
        pull_request=snapshot.to_info(github.owner, github.name),
        head_repo_id=snapshot.head_repo_id,
        base_repo_id=snapshot.base_repo_id,
        ci_failure=ci_failure,
        dry_run=dry_run,
        output_dir=output_dir,
        cost_limit=cost_limit,
        timeout_seconds=timeout_minutes * 60 if timeout_minutes is not None else None,
    )


def build_input_from_event(
    github: GitHubGateway,
    event: WorkflowRunEvent,
    *,
    output_dir: Path | None = None,
) -> AgentRunnerInput | None:
    """Build runner input for a `workflow_run` event, or None when the gate rejects it."""
    if not is_pull_request_eligible_for_fix(event):
        return None
    pr_ref = event.single_pull_request
    if pr_ref is None or pr_ref.number is None:
        raise EventError("Unable to determine pull request number from workflow run.")

    snapshot = github.get_pull_request(pr_ref.number)
    ci_failure = CIFailureInfo(
        workflow_run_id=event.run_id,
        workflow_run_url=event.html_url or "",
        failed_jobs=collect_failed_jobs(github.list_workflow_jobs(event.run_id)),
        failure_logs=github.get_failed_run_logs(event.run_id),
    )
    return AgentRunnerInput(
        pull_request=snapshot.to_info(github.owner, github.name),
        head_repo_id=snapshot.head_repo_id,
        base_repo_id=snapshot.base_repo_id,
        ci_failure=ci_failure,
        output_dir=output_dir,
    )
