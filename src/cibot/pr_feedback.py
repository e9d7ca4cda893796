from __future__ import annotations

from dataclasses import dataclass
import logging

from cibot.analytics import InferenceRecorder
from cibot.events import ClosedPullRequestEvent
from cibot.observability import log_event, log_warning
from cibot.tensorzero import (
    FEEDBACK_REASON_PR_MERGED,
    FEEDBACK_REASON_PR_REJECTED,
    TensorZeroClient,
    send_outcome_feedback,
)


LOGGER = logging.getLogger("cibot.pr_feedback")


@dataclass(frozen=True)
class PrFeedbackOutcome:
    skipped: bool
    records: int = 0
    feedback_sent: int = 0


def run_pr_feedback(
    event: ClosedPullRequestEvent,
    *,
    recorder: InferenceRecorder,
    tensorzero: TensorZeroClient,
    pr_merged_metric_name: str,
) -> PrFeedbackOutcome:
    """Report whether a closed follow-up PR was merged for every inference that produced it."""
    if event.state != "closed":
        log_warning(
            LOGGER,
            "pr_feedback_skipped",
            reason="pull_request_not_closed",
            pr_number=event.number,
            state=event.state,
        )
        return PrFeedbackOutcome(skipped=True)

    records = recorder.query_by_pull_request_id(event.pull_request_id)
    if not records:
        log_warning(
            LOGGER,
            "pr_feedback_skipped",
            reason="no_inference_records",
            pr_number=event.number,
            pull_request_id=event.pull_request_id,
        )
        return PrFeedbackOutcome(skipped=True)
    if len(records) > 1:
        log_warning(
            LOGGER,
            "pr_feedback_multiple_records",
            pr_number=event.number,
            count=len(records),
        )

    reason = FEEDBACK_REASON_PR_MERGED if event.merged else FEEDBACK_REASON_PR_REJECTED
    sent = 0
    for record in records:
        if send_outcome_feedback(
            tensorzero,
            pr_merged_metric_name,
            event.merged,
            inference_id=record.inference_id,
            episode_id=record.episode_id,
            reason=reason,
        ):
            sent += 1
    log_event(
        LOGGER,
        "pr_feedback_finished",
        pr_number=event.number,
        merged=event.merged,
        records=len(records),
        feedback_sent=sent,
    )
    return PrFeedbackOutcome(skipped=False, records=len(records), feedback_sent=sent)
