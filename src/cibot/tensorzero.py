from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import cast

import httpx

from cibot.config import TensorZeroConfig
from cibot.models import FailedJobSummary
from cibot.observability import log_event, log_warning


LOGGER = logging.getLogger("cibot.tensorzero")

GENERATION_MODEL = "tensorzero::function_name::tensorzero_github_ci_bot"
GENERATION_TEMPLATE = "generate_pr_and_comment"
FEEDBACK_REASON_PATCH_FAILED = "Failed to Apply Patch"
FEEDBACK_REASON_PR_MERGED = "Pull Request Merged"
FEEDBACK_REASON_PR_REJECTED = "Pull Request Rejected"


class FeedbackError(RuntimeError):
    pass


class GenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerationArguments:
    repo_full_name: str
    branch: str
    pr_number: int
    failed_jobs: tuple[FailedJobSummary, ...]
    diff_summary: str
    full_diff: str
    failure_logs: str

    def to_payload(self) -> dict[str, object]:
        return {
            "repo_full_name": self.repo_full_name,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "failed_jobs": [job.to_payload() for job in self.failed_jobs],
            "diff_summary": self.diff_summary,
            "full_diff": self.full_diff,
            "failure_logs": self.failure_logs,
        }


@dataclass(frozen=True)
class GenerationResponse:
    inference_id: str
    episode_id: str | None
    variant_name: str | None
    content: str
    raw: dict[str, object]


def extract_xml_tags(text: str, tag: str) -> tuple[str, ...]:
    """Return the raw body of every `<tag>...</tag>` block, in order."""
    pattern = re.compile(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", re.DOTALL)
    return tuple(match.group(1) for match in pattern.finditer(text))


class TensorZeroClient:
    """Thin client for the TensorZero gateway's feedback and OpenAI-compatible endpoints."""

    def __init__(
        self, config: TensorZeroConfig, *, http_client: httpx.Client | None = None
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=config.timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> TensorZeroClient:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def provide_inference_feedback(
        self,
        metric_name: str,
        inference_id: str,
        value: object,
        *,
        reason: str | None = None,
    ) -> None:
        self._post_feedback(
            {"metric_name": metric_name, "inference_id": inference_id, "value": value},
            reason=reason,
        )

    def provide_episode_feedback(
        self,
        metric_name: str,
        episode_id: str,
        value: object,
        *,
        reason: str | None = None,
    ) -> None:
        self._post_feedback(
            {"metric_name": metric_name, "episode_id": episode_id, "value": value},
            reason=reason,
        )

    def call_generation(self, arguments: GenerationArguments) -> GenerationResponse:
        request = {
            "model": GENERATION_MODEL,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tensorzero::template",
                            "name": GENERATION_TEMPLATE,
                            "arguments": arguments.to_payload(),
                        }
                    ],
                }
            ],
        }
        url = f"{self._config.base_url}/openai/v1/chat/completions"
        log_event(LOGGER, "generation_requested", pr_number=arguments.pr_number)
        try:
            response = self._http.post(url, json=request)
        except httpx.HTTPError as exc:
            raise GenerationError(f"TensorZero generation request failed: {exc}") from exc
        if response.is_error:
            raise GenerationError(
                f"TensorZero generation failed with status {response.status_code}: "
                f"{response.text.strip() or '<empty>'}"
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise GenerationError(f"TensorZero returned invalid JSON: {exc}") from exc
        result = _parse_generation_response(payload)
        log_event(
            LOGGER,
            "generation_received",
            inference_id=result.inference_id,
            episode_id=result.episode_id,
            variant_name=result.variant_name,
        )
        return result

    def _post_feedback(self, body: dict[str, object], *, reason: str | None) -> None:
        if reason is not None:
            body["tags"] = {"reason": reason}
        url = f"{self._config.base_url}/feedback"
        try:
            response = self._http.post(url, json=body)
        except httpx.HTTPError as exc:
            raise FeedbackError(f"Failed to provide feedback: {exc}") from exc
        if response.is_error:
            raise FeedbackError(
                f"Failed to provide feedback: {response.status_code} {response.reason_phrase}"
            )
        log_event(
            LOGGER,
            "feedback_sent",
            metric_name=body["metric_name"],
            inference_id=body.get("inference_id"),
            episode_id=body.get("episode_id"),
            value=body["value"],
            reason=reason,
        )


def send_outcome_feedback(
    client: TensorZeroClient,
    metric_name: str,
    value: bool,
    *,
    inference_id: str | None,
    episode_id: str | None,
    reason: str | None = None,
) -> bool:
    """Send boolean feedback keyed by inference id, or episode id when no inference is known.

    Failures are logged and reported through the return value; they never raise.
    """
    try:
        if inference_id:
            client.provide_inference_feedback(metric_name, inference_id, value, reason=reason)
        elif episode_id:
            client.provide_episode_feedback(metric_name, episode_id, value, reason=reason)
        else:
            log_warning(
                LOGGER,
                "feedback_skipped",
                metric_name=metric_name,
                reason="missing_inference_and_episode_id",
            )
            return False
    except FeedbackError as exc:
        log_warning(
            LOGGER,
            "feedback_failed",
            metric_name=metric_name,
            inference_id=inference_id,
            episode_id=episode_id,
            error=str(exc),
        )
        return False
    return True


def _parse_generation_response(payload: object) -> GenerationResponse:
    if not isinstance(payload, dict):
        raise GenerationError("TensorZero response must be a JSON object")
    raw = cast(dict[str, object], payload)
    inference_id = raw.get("id")
    if not isinstance(inference_id, str) or not inference_id:
        raise GenerationError("TensorZero response is missing the inference id")
    choices = raw.get("choices")
    content = ""
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = cast(dict[str, object], choices[0]).get("message")
        if isinstance(message, dict):
            raw_content = cast(dict[str, object], message).get("content")
            if isinstance(raw_content, str):
                content = raw_content
    episode_id = raw.get("episode_id")
    variant_name = raw.get("variant_name")
    return GenerationResponse(
        inference_id=inference_id,
        episode_id=episode_id if isinstance(episode_id, str) and episode_id else None,
        variant_name=variant_name if isinstance(variant_name, str) else None,
        content=content,
        raw=raw,
    )
