from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from cibot.analytics import InferenceRecorder
from cibot.comment_template import CommentContext, render_comment
from cibot.config import BotConfig
from cibot.events import WorkflowRunEvent
from cibot.followup import FollowupPrError, create_followup_pr
from cibot.github_gateway import GitHubGateway
from cibot.manifest import (
    DEFAULT_COMMENT_PATH,
    DEFAULT_PATCH_PATH,
    MANIFEST_FILENAME,
    PullRequestPatchManifest,
    detect_pull_request_drift,
    ensure_manifest_matches_event,
    load_manifest,
    read_comment,
    read_commands,
    read_patch,
    resolve_artifact_path,
)
from cibot.models import FollowupPrResult
from cibot.observability import log_event, log_warning
from cibot.outputs import set_action_output
from cibot.tensorzero import (
    FEEDBACK_REASON_PATCH_FAILED,
    TensorZeroClient,
    send_outcome_feedback,
)


LOGGER = logging.getLogger("cibot.apply_artifacts")


@dataclass(frozen=True)
class ApplyOutcome:
    cancelled: bool
    drift_reason: str | None = None
    followup_pr: FollowupPrResult | None = None
    followup_error: str | None = None
    comment_posted: bool = False


def run_apply_artifacts(
    event: WorkflowRunEvent,
    *,
    github: GitHubGateway,
    token: str,
    artifact_dir: Path,
    bot: BotConfig,
    tensorzero: TensorZeroClient,
    recorder: InferenceRecorder,
    manifest_path: str = MANIFEST_FILENAME,
) -> ApplyOutcome:
    """Privileged phase: re-validate generated artifacts and replay them against GitHub."""
    artifact_dir = artifact_dir.resolve()
    manifest = load_manifest(artifact_dir, manifest_path)
    ensure_manifest_matches_event(manifest, event, owner=github.owner, repo=github.name)
    log_event(
        LOGGER,
        "pipeline_started",
        phase="apply",
        run_id=event.run_id,
        pr_number=manifest.pull_request.number,
    )

    live = github.get_pull_request(manifest.pull_request.number)
    drift_reason = detect_pull_request_drift(manifest, live)
    if drift_reason is not None:
        log_warning(
            LOGGER,
            "apply_cancelled",
            reason="pull_request_drift",
            detail=drift_reason,
            pr_number=manifest.pull_request.number,
        )
        set_action_output("apply-artifacts-cancelled", True)
        return ApplyOutcome(cancelled=True, drift_reason=drift_reason)

    # Only artifacts the manifest declares are read; stray files are ignored.
    metadata = manifest.metadata
    diff = (
        read_patch(
            resolve_artifact_path(
                artifact_dir, manifest.outputs.generated_patch_path or DEFAULT_PATCH_PATH
            )
        )
        if metadata.has_diff
        else ""
    )
    comment_body = (
        read_comment(
            resolve_artifact_path(
                artifact_dir, manifest.outputs.generated_comment_path or DEFAULT_COMMENT_PATH
            )
        )
        if metadata.has_comment
        else ""
    )
    commands = read_commands(
        resolve_artifact_path(artifact_dir, manifest.outputs.commands_path)
        if metadata.has_commands and manifest.outputs.commands_path
        else None
    )

    followup_pr: FollowupPrResult | None = None
    followup_error: str | None = None
    if diff:
        try:
            followup_pr = create_followup_pr(
                github,
                token=token,
                pull_request=live.to_info(github.owner, github.name),
                head_repo_id=live.head_repo_id,
                base_repo_id=live.base_repo_id,
                diff=diff,
                bot=bot,
            )
        except FollowupPrError as exc:
            followup_error = str(exc)
            log_warning(
                LOGGER,
                "followup_pr_creation_failed",
                pr_number=live.number,
                stage=exc.stage,
            )
        send_outcome_feedback(
            tensorzero,
            manifest.tensorzero.diff_patched_metric_name,
            followup_pr is not None,
            inference_id=manifest.llm.inference_id,
            episode_id=manifest.llm.episode_id,
            reason=None if followup_pr is not None else FEEDBACK_REASON_PATCH_FAILED,
        )
        if followup_pr is not None:
            _record_inference_mapping(recorder, followup_pr, manifest)
    else:
        log_event(LOGGER, "followup_pr_skipped", pr_number=live.number, reason="no_diff")

    comment = render_comment(
        CommentContext(
            generated_comment_body=comment_body or None,
            followup_pr_number=followup_pr.number if followup_pr else None,
            commands=commands,
            followup_pr_creation_error=followup_error,
            generated_patch=diff or None,
        )
    )
    comment_posted = False
    if comment is not None:
        try:
            github.post_issue_comment(manifest.pull_request.number, comment)
            comment_posted = True
            log_event(
                LOGGER, "diagnostic_comment_posted", pr_number=manifest.pull_request.number
            )
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "diagnostic_comment_failed",
                pr_number=manifest.pull_request.number,
                error_type=type(exc).__name__,
            )
    else:
        log_event(LOGGER, "diagnostic_comment_skipped", pr_number=manifest.pull_request.number)

    if followup_pr is not None:
        set_action_output("followup-pr-number", followup_pr.number)
        set_action_output("followup-pr-url", followup_pr.html_url)
    log_event(
        LOGGER,
        "pipeline_finished",
        phase="apply",
        run_id=event.run_id,
        pr_number=manifest.pull_request.number,
        followup_pr_number=followup_pr.number if followup_pr else None,
    )
    return ApplyOutcome(
        cancelled=False,
        followup_pr=followup_pr,
        followup_error=followup_error,
        comment_posted=comment_posted,
    )


def _record_inference_mapping(
    recorder: InferenceRecorder,
    followup_pr: FollowupPrResult,
    manifest: PullRequestPatchManifest,
) -> None:
    if not manifest.llm.episode_id:
        log_warning(
            LOGGER,
            "inference_record_skipped",
            reason="missing_episode_id",
            followup_pr_number=followup_pr.number,
        )
        return
    recorder.record(
        pull_request_id=followup_pr.id,
        original_pull_request_url=manifest.pull_request.html_url or "",
        inference_id=manifest.llm.inference_id,
        episode_id=manifest.llm.episode_id,
    )
