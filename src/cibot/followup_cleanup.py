from __future__ import annotations

from dataclasses import dataclass
import logging

from cibot.followup import followup_branch_pattern
from cibot.github_gateway import GitHubGateway
from cibot.models import PullRequest
from cibot.observability import log_event, log_warning


LOGGER = logging.getLogger("cibot.followup_cleanup")


@dataclass(frozen=True)
class CloseFollowupPrsResult:
    closed: int
    errors: tuple[str, ...]


def find_followup_prs(
    github: GitHubGateway,
    *,
    parent_number: int,
    parent_head_ref: str,
    namespace: str,
) -> tuple[PullRequest, ...]:
    pattern = followup_branch_pattern(namespace)
    matches: list[PullRequest] = []
    for pull in github.list_pull_requests(base=parent_head_ref, state="open"):
        match = pattern.fullmatch(pull.head_ref)
        if match is None or int(match.group(1)) != parent_number:
            continue
        matches.append(pull)
    return tuple(matches)


def close_comment_body(parent_number: int, parent_merged: bool) -> str:
    verb = "merged" if parent_merged else "closed"
    return "\n".join(
        [
            "## This PR has been automatically closed",
            "",
            f"The base PR #{parent_number} has been {verb}.",
            "",
            f"Since this follow-up PR was created to fix CI issues on #{parent_number}, "
            "it is no longer needed.",
            "",
            "---",
            "*Closed by TensorZero CI Bot*",
        ]
    )


def close_followup_prs_for_parent(
    github: GitHubGateway,
    *,
    parent_number: int,
    parent_head_ref: str,
    parent_merged: bool,
    namespace: str,
) -> CloseFollowupPrsResult:
    """Close every open bot follow-up PR stacked on a parent PR that just closed.

    Per-PR failures are collected into the result rather than raised.
    """
    followups = find_followup_prs(
        github,
        parent_number=parent_number,
        parent_head_ref=parent_head_ref,
        namespace=namespace,
    )
    if not followups:
        log_event(LOGGER, "followup_prs_not_found", parent_pr_number=parent_number)
        return CloseFollowupPrsResult(closed=0, errors=())

    closed = 0
    errors: list[str] = []
    body = close_comment_body(parent_number, parent_merged)
    for followup in followups:
        try:
            github.post_issue_comment(followup.number, body)
            github.close_pull_request(followup.number)
        except Exception as exc:  # noqa: BLE001
            errors.append(f"PR #{followup.number}: {exc}")
            log_warning(
                LOGGER,
                "followup_pr_close_failed",
                parent_pr_number=parent_number,
                followup_pr_number=followup.number,
                error_type=type(exc).__name__,
            )
            continue
        closed += 1
        log_event(
            LOGGER,
            "followup_pr_closed",
            parent_pr_number=parent_number,
            followup_pr_number=followup.number,
        )
        try:
            github.delete_branch(followup.head_ref)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "followup_branch_delete_failed",
                branch=followup.head_ref,
                error_type=type(exc).__name__,
            )
    return CloseFollowupPrsResult(closed=closed, errors=tuple(errors))
