"""Narrow, immutable views of the GitHub Actions event payloads the bot consumes.

GitHub hands the triggering event to a workflow as a JSON file named by
``GITHUB_EVENT_PATH``. Everything downstream works on the dataclasses below so
that the loosely-typed payload never travels past this module.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
from typing import cast


class EventError(ValueError):
    pass


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str
    default_branch: str | None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class EventPullRequestRef:
    number: int | None
    head_ref: str | None
    head_sha: str | None
    head_repo_id: int | None
    head_repo_name: str | None
    base_ref: str | None
    base_repo_id: int | None
    base_repo_name: str | None


@dataclass(frozen=True)
class WorkflowRunEvent:
    run_id: int
    run_attempt: int | None
    name: str | None
    conclusion: str | None
    head_branch: str | None
    head_sha: str | None
    html_url: str | None
    pull_requests: tuple[EventPullRequestRef, ...]
    repository: RepositoryRef | None

    @property
    def single_pull_request(self) -> EventPullRequestRef | None:
        if len(self.pull_requests) != 1:
            return None
        return self.pull_requests[0]


@dataclass(frozen=True)
class ClosedPullRequestEvent:
    action: str | None
    pull_request_id: int
    number: int
    state: str
    merged: bool
    head_ref: str
    base_ref: str
    html_url: str
    repository: RepositoryRef | None


def load_event_payload(path: Path | None = None) -> dict[str, object]:
    if path is None:
        raw_path = os.environ.get("GITHUB_EVENT_PATH", "").strip()
        if not raw_path:
            raise EventError("GITHUB_EVENT_PATH is not set; pass --event-path explicitly")
        path = Path(raw_path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise EventError(f"Failed to read event payload from {path}: {exc}") from exc
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise EventError("Event payload must be a JSON object")
    return payload_obj


def parse_workflow_run_event(payload: dict[str, object]) -> WorkflowRunEvent:
    run_obj = _as_object_dict(payload.get("workflow_run"))
    if run_obj is None:
        raise EventError("This command is expected to run on a workflow_run event")
    run_id = _as_optional_int(run_obj.get("id"))
    if run_id is None:
        raise EventError("workflow_run payload is missing its run id")

    pull_requests: list[EventPullRequestRef] = []
    raw_pull_requests = run_obj.get("pull_requests")
    if isinstance(raw_pull_requests, list):
        for item in raw_pull_requests:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            pull_requests.append(_parse_pull_request_ref(item_obj))

    return WorkflowRunEvent(
        run_id=run_id,
        run_attempt=_as_optional_int(run_obj.get("run_attempt")),
        name=_as_optional_str(run_obj.get("name")),
        conclusion=_as_optional_str(run_obj.get("conclusion")),
        head_branch=_as_optional_str(run_obj.get("head_branch")),
        head_sha=_as_optional_str(run_obj.get("head_sha")),
        html_url=_as_optional_str(run_obj.get("html_url")),
        pull_requests=tuple(pull_requests),
        repository=parse_repository(payload),
    )


def parse_closed_pull_request_event(payload: dict[str, object]) -> ClosedPullRequestEvent:
    pr_obj = _as_object_dict(payload.get("pull_request"))
    if pr_obj is None:
        raise EventError("This command is expected to run on a pull_request event")
    pr_id = _as_optional_int(pr_obj.get("id"))
    number = _as_optional_int(pr_obj.get("number"))
    if pr_id is None or number is None:
        raise EventError("pull_request payload is missing its id or number")
    head = _as_object_dict(pr_obj.get("head")) or {}
    base = _as_object_dict(pr_obj.get("base")) or {}
    merged = pr_obj.get("merged")
    return ClosedPullRequestEvent(
        action=_as_optional_str(payload.get("action")),
        pull_request_id=pr_id,
        number=number,
        state=_as_optional_str(pr_obj.get("state")) or "",
        merged=merged is True,
        head_ref=_as_optional_str(head.get("ref")) or "",
        base_ref=_as_optional_str(base.get("ref")) or "",
        html_url=_as_optional_str(pr_obj.get("html_url")) or "",
        repository=parse_repository(payload),
    )


def parse_repository(payload: dict[str, object]) -> RepositoryRef | None:
    repo_obj = _as_object_dict(payload.get("repository"))
    if repo_obj is not None:
        owner_obj = _as_object_dict(repo_obj.get("owner")) or {}
        owner = _as_optional_str(owner_obj.get("login"))
        name = _as_optional_str(repo_obj.get("name"))
        if owner and name:
            return RepositoryRef(
                owner=owner,
                name=name,
                default_branch=_as_optional_str(repo_obj.get("default_branch")),
            )
    full_name = os.environ.get("GITHUB_REPOSITORY", "").strip()
    if "/" in full_name:
        owner, name = full_name.split("/", 1)
        return RepositoryRef(owner=owner, name=name, default_branch=None)
    return None


def _parse_pull_request_ref(item: dict[str, object]) -> EventPullRequestRef:
    head = _as_object_dict(item.get("head")) or {}
    base = _as_object_dict(item.get("base")) or {}
    head_repo = _as_object_dict(head.get("repo")) or {}
    base_repo = _as_object_dict(base.get("repo")) or {}
    return EventPullRequestRef(
        number=_as_optional_int(item.get("number")),
        head_ref=_as_optional_str(head.get("ref")),
        head_sha=_as_optional_str(head.get("sha")),
        head_repo_id=_as_optional_int(head_repo.get("id")),
        head_repo_name=_as_optional_str(head_repo.get("name")),
        base_ref=_as_optional_str(base.get("ref")),
        base_repo_id=_as_optional_int(base_repo.get("id")),
        base_repo_name=_as_optional_str(base_repo.get("name")),
    )


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
