from __future__ import annotations

from dataclasses import dataclass
import logging

from cibot.agent_driver import AgentRunResult, AgentTrajectoryError, MiniSweAgentDriver
from cibot.analytics import InferenceRecorder
from cibot.ci_context import (
    CONTEXT_FILENAME,
    CIFailureContext,
    remove_failure_context_file,
    write_failure_context_file,
)
from cibot.comment_template import CommentContext, render_comment
from cibot.config import AppConfig
from cibot.followup import FollowupPrError, create_followup_pr
from cibot.git_ops import (
    clone_pull_request_repository,
    get_pull_request_diff,
    normalize_diff,
)
from cibot.github_gateway import GitHubGateway
from cibot.inputs import AgentRunnerInput
from cibot.models import AgentCompletionOutput, AgentDecision, FollowupPrResult
from cibot.observability import log_event, log_warning
from cibot.outputs import write_debug_artifact
from cibot.review_comments import create_review_comments, parse_git_diff, post_review_comments
from cibot.shell import mask_secrets
from cibot.tensorzero import (
    FEEDBACK_REASON_PATCH_FAILED,
    TensorZeroClient,
    send_outcome_feedback,
)


LOGGER = logging.getLogger("cibot.runner")

FIX_TASK = f"Fix the CI failures as described in {CONTEXT_FILENAME}"
REVIEW_TASK = f"Review and improve the changes in this PR as described in {CONTEXT_FILENAME}"
FEEDBACK_REASON_AGENT_FAILED = "Agent Run Failed"


@dataclass(frozen=True)
class AgentRunnerResult:
    success: bool
    diff: str | None = None
    decision: AgentDecision | None = None
    reasoning: str | None = None
    followup_pr_number: int | None = None
    error: str | None = None


class AgentRunner:
    """Drive one agent run against one pull request and reconcile what it changed."""

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        token: str,
        driver: MiniSweAgentDriver | None = None,
        tensorzero: TensorZeroClient | None = None,
        recorder: InferenceRecorder | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._token = token
        self._driver = driver or MiniSweAgentDriver(config.agent)
        self._tensorzero = tensorzero
        self._recorder = recorder

    def run(self, runner_input: AgentRunnerInput) -> AgentRunnerResult:
        pr = runner_input.pull_request
        log_event(
            LOGGER,
            "pipeline_started",
            phase="agent",
            repo_full_name=pr.repo_full_name,
            pr_number=pr.number,
            dry_run=runner_input.dry_run,
            workflow_run_id=(
                runner_input.ci_failure.workflow_run_id if runner_input.ci_failure else None
            ),
        )
        try:
            result = self._run(runner_input)
        except Exception as exc:  # noqa: BLE001
            message = mask_secrets(str(exc), (self._token,))
            log_warning(
                LOGGER,
                "pipeline_failed",
                pr_number=pr.number,
                error_type=type(exc).__name__,
                error=message,
            )
            return AgentRunnerResult(success=False, error=message)
        log_event(
            LOGGER,
            "pipeline_finished",
            phase="agent",
            pr_number=pr.number,
            success=result.success,
            decision=result.decision,
            has_diff=result.diff is not None,
            followup_pr_number=result.followup_pr_number,
        )
        return result

    def _run(self, runner_input: AgentRunnerInput) -> AgentRunnerResult:
        pr = runner_input.pull_request
        ci_failure = runner_input.ci_failure
        output_dir = runner_input.output_dir

        pr_diff = get_pull_request_diff(self._token, pr)
        write_debug_artifact(output_dir, "fetched-diff-summary.txt", pr_diff.diff_summary)
        write_debug_artifact(output_dir, "fetched-full-diff.txt", pr_diff.full_diff)

        context = CIFailureContext(
            repo_full_name=pr.repo_full_name,
            branch=pr.head_ref,
            pr_number=pr.number,
            pr_url=pr.html_url,
            workflow_run_id=ci_failure.workflow_run_id if ci_failure else None,
            workflow_run_url=ci_failure.workflow_run_url if ci_failure else None,
            failed_jobs=ci_failure.failed_jobs if ci_failure else (),
            diff_summary=pr_diff.diff_summary,
            full_diff=pr_diff.full_diff,
            failure_logs=ci_failure.failure_logs if ci_failure else "",
            pr_description=pr.description,
        )

        with clone_pull_request_repository(
            self._token, pr.owner, pr.repo, pr.head_ref
        ) as cloned:
            write_failure_context_file(cloned.repo_dir, context)
            try:
                agent_result = self._driver.run(
                    task=FIX_TASK if ci_failure else REVIEW_TASK,
                    cwd=cloned.repo_dir,
                    cost_limit=runner_input.cost_limit,
                    timeout_seconds=runner_input.timeout_seconds,
                    pr_number=pr.number,
                )
            except AgentTrajectoryError as exc:
                if exc.episode_id is not None and not runner_input.dry_run:
                    self._send_patch_feedback(
                        False,
                        episode_id=exc.episode_id,
                        reason=FEEDBACK_REASON_AGENT_FAILED,
                    )
                raise
            finally:
                remove_failure_context_file(cloned.repo_dir)

            write_debug_artifact(
                output_dir, "agent_trajectory.json", agent_result.trajectory.to_json()
            )
            diff = normalize_diff(cloned.git.staged_diff())

        completion = agent_result.completion
        log_event(
            LOGGER,
            "agent_decision",
            pr_number=pr.number,
            decision=completion.decision,
            reasoning=completion.reasoning,
        )
        if not diff:
            log_event(LOGGER, "agent_made_no_changes", pr_number=pr.number)
            return AgentRunnerResult(
                success=True,
                decision=completion.decision,
                reasoning=completion.reasoning,
            )

        if runner_input.dry_run:
            log_event(
                LOGGER,
                "dry_run_stopped",
                pr_number=pr.number,
                decision=completion.decision,
                diff_chars=len(diff),
            )
            return AgentRunnerResult(
                success=True,
                diff=diff,
                decision=completion.decision,
                reasoning=completion.reasoning,
            )

        if completion.decision == "INLINE_SUGGESTIONS":
            return self._post_inline_suggestions(runner_input, diff, completion)
        return self._open_followup_pr(runner_input, diff, completion, agent_result)

    def _post_inline_suggestions(
        self,
        runner_input: AgentRunnerInput,
        diff: str,
        completion: AgentCompletionOutput,
    ) -> AgentRunnerResult:
        pr = runner_input.pull_request
        changes = parse_git_diff(diff)
        comments = create_review_comments(changes, completion.reasoning)
        post_review_comments(self._github, pr.number, comments, pr.head_sha)
        return AgentRunnerResult(
            success=True,
            diff=diff,
            decision="INLINE_SUGGESTIONS",
            reasoning=completion.reasoning,
        )

    def _open_followup_pr(
        self,
        runner_input: AgentRunnerInput,
        diff: str,
        completion: AgentCompletionOutput,
        agent_result: AgentRunResult,
    ) -> AgentRunnerResult:
        pr = runner_input.pull_request
        followup_pr: FollowupPrResult | None = None
        followup_error: str | None = None
        try:
            followup_pr = create_followup_pr(
                self._github,
                token=self._token,
                pull_request=pr,
                head_repo_id=runner_input.head_repo_id,
                base_repo_id=runner_input.base_repo_id,
                diff=diff,
                bot=self._config.bot,
                output_dir=runner_input.output_dir,
            )
        except FollowupPrError as exc:
            followup_error = str(exc)

        if followup_pr is not None:
            self._send_patch_feedback(True, episode_id=agent_result.episode_id)
            if self._recorder is not None:
                self._recorder.record(
                    pull_request_id=followup_pr.id,
                    original_pull_request_url=pr.html_url,
                    episode_id=agent_result.episode_id,
                )
        elif followup_error is not None:
            self._send_patch_feedback(
                False,
                episode_id=agent_result.episode_id,
                reason=FEEDBACK_REASON_PATCH_FAILED,
            )

        comment = render_comment(
            CommentContext(
                generated_comment_body=completion.reasoning,
                followup_pr_number=followup_pr.number if followup_pr else None,
                followup_pr_creation_error=followup_error,
                generated_patch=diff,
            )
        )
        if comment is not None:
            try:
                self._github.post_issue_comment(pr.number, comment)
                log_event(LOGGER, "diagnostic_comment_posted", pr_number=pr.number)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "diagnostic_comment_failed",
                    pr_number=pr.number,
                    error_type=type(exc).__name__,
                )

        return AgentRunnerResult(
            success=True,
            diff=diff,
            decision="PULL_REQUEST",
            reasoning=completion.reasoning,
            followup_pr_number=followup_pr.number if followup_pr else None,
            error=followup_error,
        )

    def _send_patch_feedback(
        self,
        value: bool,
        *,
        episode_id: str | None,
        reason: str | None = None,
    ) -> None:
        tensorzero_config = self._config.tensorzero
        if (
            self._tensorzero is None
            or tensorzero_config is None
            or tensorzero_config.diff_patched_metric_name is None
        ):
            return
        send_outcome_feedback(
            self._tensorzero,
            tensorzero_config.diff_patched_metric_name,
            value,
            inference_id=None,
            episode_id=episode_id,
            reason=reason,
        )
