"""Turn a generated patch into a follow-up pull request against an in-flight PR.

The follow-up targets the original PR's head branch, not the repository's
default branch. Creation moves through fixed stages and any failure names the
stage it stopped at so callers can report it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
import re
import time
from typing import Literal

from cibot.config import BotConfig
from cibot.git_ops import authenticated_remote_url, clone_pull_request_repository
from cibot.github_gateway import GitHubGateway
from cibot.models import FollowupPrResult, PullRequestInfo
from cibot.observability import log_event, log_warning
from cibot.shell import mask_secrets


LOGGER = logging.getLogger("cibot.followup")

FollowupStage = Literal[
    "cloned",
    "branch-created",
    "patch-applied",
    "committed",
    "pushed",
    "pr-created",
]
PATCH_FILENAME = "cibot.patch"
FOLLOWUP_PAYLOAD_FILENAME = "followup-pr-payload.json"


class FollowupPrError(RuntimeError):
    """`stage` is the last stage reached, or None when the clone never finished."""

    def __init__(self, message: str, *, stage: FollowupStage | None) -> None:
        super().__init__(message)
        self.stage = stage


class ForkPullRequestError(FollowupPrError):
    pass


def followup_branch_name(namespace: str, pr_number: int, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{namespace}/pr-{pr_number}-{timestamp_ms}"


def followup_branch_pattern(namespace: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(namespace)}/pr-(\d+)-\d+$")


def _followup_body(pr_number: int) -> str:
    return "\n".join(
        [
            f"This pull request was generated automatically in response to failing CI on #{pr_number}.",
            "",
            "The proposed changes were produced by an automated agent from the CI failure context.",
        ]
    )


def create_followup_pr(
    github: GitHubGateway,
    *,
    token: str,
    pull_request: PullRequestInfo,
    head_repo_id: int | None,
    base_repo_id: int | None,
    diff: str,
    bot: BotConfig,
    output_dir: Path | None = None,
) -> FollowupPrResult | None:
    """Apply `diff` on a fresh clone of the PR head branch and open a PR back into it.

    Returns None when there is nothing to propose (empty diff, or a patch that
    leaves the working copy clean). Raises `ForkPullRequestError` before any
    mutation for fork PRs, and `FollowupPrError` for every other failure.
    """
    if not diff.strip():
        log_event(LOGGER, "followup_pr_skipped", pr_number=pull_request.number, reason="empty_diff")
        return None
    if base_repo_id is None:
        raise ForkPullRequestError(
            "Unable to determine the base repository for the pull request; refusing to push",
            stage=None,
        )
    if head_repo_id != base_repo_id:
        raise ForkPullRequestError(
            f"Pull request #{pull_request.number} originates from a fork; "
            "refusing to push a follow-up branch",
            stage=None,
        )

    branch = followup_branch_name(bot.branch_namespace, pull_request.number)
    masked_remote = mask_secrets(
        authenticated_remote_url(token, pull_request.owner, pull_request.repo), (token,)
    )
    stage: FollowupStage | None = None
    try:
        with clone_pull_request_repository(
            token, pull_request.owner, pull_request.repo, pull_request.head_ref
        ) as cloned:
            git = cloned.git
            stage = "cloned"
            git.checkout_new_branch(branch)
            stage = "branch-created"

            patch_path = cloned.repo_dir / PATCH_FILENAME
            patch_text = diff if diff.endswith("\n") else f"{diff}\n"
            patch_path.write_text(patch_text, encoding="utf-8")
            try:
                git.apply_patch(patch_path)
            finally:
                patch_path.unlink(missing_ok=True)
            stage = "patch-applied"

            if not git.status_porcelain().strip():
                log_event(
                    LOGGER,
                    "followup_pr_skipped",
                    pr_number=pull_request.number,
                    reason="patch_produced_no_changes",
                )
                return None

            git.set_config("user.email", bot.commit_user_email)
            git.set_config("user.name", bot.commit_user_name)
            git.add_all()
            git.commit(f"chore: automated fix for PR #{pull_request.number}")
            stage = "committed"

            git.push_set_upstream(branch)
            stage = "pushed"

        created = github.create_pull_request(
            title=f"Automated follow-up for #{pull_request.number}",
            head=branch,
            base=pull_request.head_ref,
            body=_followup_body(pull_request.number),
        )
    except Exception as exc:  # noqa: BLE001
        detail = mask_secrets(str(exc), (token,))
        log_warning(
            LOGGER,
            "followup_pr_failed",
            pr_number=pull_request.number,
            stage=stage,
            error_type=type(exc).__name__,
        )
        raise FollowupPrError(
            f"Failed to create follow-up PR after stage {stage or 'none'} "
            f"using remote {masked_remote}: {detail}",
            stage=stage,
        ) from exc

    result = FollowupPrResult(number=created.number, id=created.id, html_url=created.html_url)
    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / FOLLOWUP_PAYLOAD_FILENAME).write_text(
            json.dumps(
                {
                    "number": result.number,
                    "id": result.id,
                    "html_url": result.html_url,
                    "head": branch,
                    "base": pull_request.head_ref,
                },
                indent=2,
            ),
            encoding="utf-8",
        )
    log_event(
        LOGGER,
        "followup_pr_created",
        pr_number=pull_request.number,
        followup_pr_number=result.number,
        branch=branch,
    )
    return result
