from __future__ import annotations

import logging

from cibot.events import WorkflowRunEvent
from cibot.observability import log_event, log_warning


LOGGER = logging.getLogger("cibot.eligibility")


def is_pull_request_eligible_for_fix(event: WorkflowRunEvent) -> bool:
    """Return True when the failed run belongs to exactly one same-repo PR targeting the default branch."""
    pull_request = event.single_pull_request
    if pull_request is None:
        log_warning(
            LOGGER,
            "pipeline_skipped",
            reason="not_single_pull_request",
            run_id=event.run_id,
            pull_request_count=len(event.pull_requests),
        )
        return False

    if (
        pull_request.head_repo_id is None
        or pull_request.base_repo_id is None
        or pull_request.head_repo_id != pull_request.base_repo_id
    ):
        log_warning(
            LOGGER,
            "pipeline_skipped",
            reason="fork_pull_request",
            run_id=event.run_id,
            head_repo=pull_request.head_repo_name,
            base_repo=pull_request.base_repo_name,
        )
        return False

    if event.conclusion != "failure":
        log_warning(
            LOGGER,
            "pipeline_skipped",
            reason="run_not_failed",
            run_id=event.run_id,
            conclusion=event.conclusion,
        )
        return False

    default_branch = event.repository.default_branch if event.repository else None
    if default_branch is None or pull_request.base_ref != default_branch:
        log_warning(
            LOGGER,
            "pipeline_skipped",
            reason="base_not_default_branch",
            run_id=event.run_id,
            base_ref=pull_request.base_ref,
            default_branch=default_branch,
        )
        return False

    log_event(
        LOGGER,
        "pull_request_eligible",
        run_id=event.run_id,
        pr_number=pull_request.number,
    )
    return True
