from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path

from cibot.ci_context import collect_failed_jobs
from cibot.eligibility import is_pull_request_eligible_for_fix
from cibot.events import EventError, WorkflowRunEvent
from cibot.git_ops import get_pull_request_diff, normalize_diff
from cibot.github_gateway import GitHubGateway
from cibot.manifest import (
    ARTIFACT_VERSION,
    ManifestAuthor,
    ManifestLlm,
    ManifestOutputs,
    ManifestPullRequest,
    ManifestRepository,
    ManifestTensorZero,
    ManifestWorkflowRun,
    PullRequestPatchManifest,
    write_patch_artifacts,
)
from cibot.observability import log_event
from cibot.outputs import write_debug_artifact
from cibot.tensorzero import (
    GenerationArguments,
    GenerationError,
    TensorZeroClient,
    extract_xml_tags,
)


LOGGER = logging.getLogger("cibot.generate_patch")

WORKFLOW_JOBS_FILENAME = "workflow-jobs.json"
FAILURE_LOGS_FILENAME = "failure-logs.txt"
LLM_RESPONSE_FILENAME = "llm-response.json"
DIFF_SUMMARY_FILENAME = "fetched-diff-summary.txt"
FULL_DIFF_FILENAME = "fetched-full-diff.txt"


@dataclass(frozen=True)
class GeneratePatchOutcome:
    skipped: bool
    manifest: PullRequestPatchManifest | None = None


def run_generate_patch(
    event: WorkflowRunEvent,
    *,
    github: GitHubGateway,
    token: str,
    tensorzero: TensorZeroClient,
    diff_patched_metric_name: str,
    output_dir: Path,
) -> GeneratePatchOutcome:
    """Untrusted phase: ask the gateway for a fix and leave it on disk as a manifest.

    Never mutates GitHub. Everything written here is re-validated by the apply
    phase before use.
    """
    if not is_pull_request_eligible_for_fix(event):
        return GeneratePatchOutcome(skipped=True)
    pr_ref = event.single_pull_request
    if pr_ref is None or pr_ref.number is None:
        raise EventError("Unable to determine pull request number from workflow run.")

    log_event(
        LOGGER,
        "pipeline_started",
        phase="generate",
        run_id=event.run_id,
        pr_number=pr_ref.number,
    )
    output_dir.mkdir(parents=True, exist_ok=True)

    jobs = github.list_workflow_jobs(event.run_id)
    write_debug_artifact(
        output_dir,
        WORKFLOW_JOBS_FILENAME,
        json.dumps([job.to_payload() for job in jobs], indent=2),
    )

    snapshot = github.get_pull_request(pr_ref.number)
    pull_request = snapshot.to_info(github.owner, github.name)
    pr_diff = get_pull_request_diff(token, pull_request)
    write_debug_artifact(output_dir, DIFF_SUMMARY_FILENAME, pr_diff.diff_summary)
    write_debug_artifact(output_dir, FULL_DIFF_FILENAME, pr_diff.full_diff)

    failed_jobs = collect_failed_jobs(jobs)
    failure_logs = github.get_failed_run_logs(event.run_id)
    write_debug_artifact(output_dir, FAILURE_LOGS_FILENAME, failure_logs)

    response = tensorzero.call_generation(
        GenerationArguments(
            repo_full_name=github.full_name,
            branch=event.head_branch or snapshot.head_ref,
            pr_number=pr_ref.number,
            failed_jobs=failed_jobs,
            diff_summary=pr_diff.diff_summary,
            full_diff=pr_diff.full_diff,
            failure_logs=failure_logs,
        )
    )
    write_debug_artifact(output_dir, LLM_RESPONSE_FILENAME, json.dumps(response.raw, indent=2))
    if not response.content.strip():
        raise GenerationError("No LLM response found")

    diff = _first_patch(extract_xml_tags(response.content, "diff"))
    comment = _first_non_empty(extract_xml_tags(response.content, "comments"))
    commands = tuple(
        command.strip()
        for command in extract_xml_tags(response.content, "command")
        if command.strip()
    )

    manifest = PullRequestPatchManifest(
        artifact_version=ARTIFACT_VERSION,
        created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        workflow_run=ManifestWorkflowRun(
            id=event.run_id,
            attempt=event.run_attempt,
            name=event.name,
            head_branch=event.head_branch,
        ),
        repository=ManifestRepository(owner=github.owner, name=github.name),
        pull_request=ManifestPullRequest(
            number=snapshot.number,
            head_sha=snapshot.head_sha,
            head_ref=snapshot.head_ref,
            base_sha=snapshot.base_sha,
            base_ref=snapshot.base_ref,
            html_url=snapshot.html_url or None,
            head_repository_id=snapshot.head_repo_id,
            base_repository_id=snapshot.base_repo_id,
            author=(
                ManifestAuthor(login=snapshot.author_login, id=snapshot.author_id)
                if snapshot.author_login is not None or snapshot.author_id is not None
                else None
            ),
        ),
        outputs=ManifestOutputs(
            workflow_jobs_path=WORKFLOW_JOBS_FILENAME,
            failure_logs_path=FAILURE_LOGS_FILENAME,
            llm_response_path=LLM_RESPONSE_FILENAME,
        ),
        llm=ManifestLlm(
            inference_id=response.inference_id,
            response_id=response.inference_id,
            episode_id=response.episode_id,
        ),
        tensorzero=ManifestTensorZero(diff_patched_metric_name=diff_patched_metric_name),
    )
    written = write_patch_artifacts(
        output_dir, manifest, diff=diff, comment=comment, commands=commands
    )
    log_event(
        LOGGER,
        "pipeline_finished",
        phase="generate",
        run_id=event.run_id,
        pr_number=pr_ref.number,
        has_diff=written.metadata.has_diff,
    )
    return GeneratePatchOutcome(skipped=False, manifest=written)


def _first_non_empty(values: tuple[str, ...]) -> str:
    for value in values:
        if value.strip():
            return value.strip()
    return ""


def _first_patch(values: tuple[str, ...]) -> str:
    for value in values:
        patch = normalize_diff(value)
        if patch:
            return patch
    return ""
