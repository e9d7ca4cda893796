from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Literal, cast
from urllib.parse import urlencode

from cibot.models import (
    PullRequest,
    PullRequestSnapshot,
    ReviewComment,
    WorkflowJob,
    WorkflowJobStep,
    WorkflowRun,
)
from cibot.observability import log_event
from cibot.shell import run


LOGGER = logging.getLogger("cibot.github_gateway")


class GitHubApiError(RuntimeError):
    """GitHub returned a non-2xx status or a payload of an unexpected shape."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = field(default=None, repr=False, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _require_object(self._api_json("GET", path), what="pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base")
        head_sha = _as_string(head.get("sha"))
        base_sha = _as_string(base.get("sha"))
        if not head_sha or not base_sha:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base SHA")
        head_repo = _as_object_dict(head.get("repo"))
        base_repo = _as_object_dict(base.get("repo"))
        user = _as_object_dict(payload_obj.get("user"))

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            id=_as_int(payload_obj.get("id"), field="id"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            state=_as_string(payload_obj.get("state")),
            merged=payload_obj.get("merged") is True,
            html_url=_as_string(payload_obj.get("html_url")),
            head_sha=head_sha,
            head_ref=_as_string(head.get("ref")),
            head_repo_id=_as_optional_int(head_repo.get("id")) if head_repo else None,
            base_sha=base_sha,
            base_ref=_as_string(base.get("ref")),
            base_repo_id=_as_optional_int(base_repo.get("id")) if base_repo else None,
            author_login=_as_optional_str(user.get("login")) if user else None,
            author_id=_as_optional_int(user.get("id")) if user else None,
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def list_pull_requests(
        self, *, base: str, state: Literal["open", "closed", "all"] = "open"
    ) -> tuple[PullRequest, ...]:
        query = urlencode({"state": state, "base": base, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/pulls?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list for pull requests")

        pulls: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            head = _as_object_dict(item_obj.get("head")) or {}
            pulls.append(
                PullRequest(
                    number=_as_int(item_obj.get("number"), field="number"),
                    id=_as_int(item_obj.get("id"), field="id"),
                    html_url=_as_string(item_obj.get("html_url")),
                    head_ref=_as_string(head.get("ref")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_requests",
            base=base,
            state=state,
            count=len(pulls),
        )
        return tuple(pulls)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload_obj = _require_object(
                self._api_json(
                    "POST",
                    path,
                    payload={"title": title, "head": head, "base": base, "body": body},
                ),
                what="created pull request",
            )
            number = _as_int(payload_obj.get("number"), field="number")
            pr_id = _as_int(payload_obj.get("id"), field="id")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, id=pr_id, html_url=html_url, head_ref=head)

    def close_pull_request(self, pr_number: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        self._api_json("PATCH", path, payload={"state": "closed"})
        log_event(LOGGER, "github_pr_closed", pr_number=pr_number)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def create_review(
        self,
        pr_number: int,
        *,
        commit_id: str,
        comments: tuple[ReviewComment, ...],
        body: str | None = None,
    ) -> None:
        """Submit every comment in a single COMMENT review."""
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews"
        payload: dict[str, object] = {
            "commit_id": commit_id,
            "event": "COMMENT",
            "comments": [
                {"path": comment.path, "line": comment.line, "body": comment.body}
                for comment in comments
            ],
        }
        if body:
            payload["body"] = body
        try:
            self._api_json("POST", path, payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_review_create_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                comment_count=len(comments),
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_review_created",
            pr_number=pr_number,
            comment_count=len(comments),
        )

    def delete_branch(self, branch: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{branch}"
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_ref_deleted", ref=f"heads/{branch}")

    def get_workflow_run(self, run_id: int) -> WorkflowRun:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}"
        payload_obj = _require_object(self._api_json("GET", path), what="workflow run")
        workflow_run = _parse_workflow_run(payload_obj)
        log_event(LOGGER, "github_read", endpoint="workflow_run", run_id=run_id)
        return workflow_run

    def list_workflow_runs_for_commit(self, head_sha: str) -> tuple[WorkflowRun, ...]:
        query = urlencode({"head_sha": head_sha, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/actions/runs?{query}"
        payload_obj = _require_object(self._api_json("GET", path), what="workflow runs")
        runs_payload = payload_obj.get("workflow_runs")
        if not isinstance(runs_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected workflow_runs list")

        runs: list[WorkflowRun] = []
        for item in runs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            runs.append(_parse_workflow_run(item_obj))
        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            head_sha=head_sha,
            count=len(runs),
        )
        return tuple(runs)

    def find_latest_failed_workflow_run(self, head_sha: str) -> WorkflowRun | None:
        failed = [
            workflow_run
            for workflow_run in self.list_workflow_runs_for_commit(head_sha)
            if workflow_run.conclusion == "failure"
        ]
        if not failed:
            return None
        return max(failed, key=lambda workflow_run: (workflow_run.created_at, workflow_run.run_id))

    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJob, ...]:
        """Return the run's jobs in the order the API reports them."""
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/jobs?per_page=100"
        payload_obj = _require_object(self._api_json("GET", path), what="workflow jobs")
        jobs_payload = payload_obj.get("jobs")
        if not isinstance(jobs_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected jobs list")

        jobs: list[WorkflowJob] = []
        for item in jobs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            steps: list[WorkflowJobStep] = []
            steps_payload = item_obj.get("steps")
            if isinstance(steps_payload, list):
                for raw_step in steps_payload:
                    step_obj = _as_object_dict(raw_step)
                    if step_obj is None:
                        continue
                    steps.append(
                        WorkflowJobStep(
                            name=_as_string(step_obj.get("name")),
                            status=_as_string(step_obj.get("status")),
                            conclusion=_as_optional_str(step_obj.get("conclusion")),
                        )
                    )
            jobs.append(
                WorkflowJob(
                    job_id=_as_int(item_obj.get("id"), field="id"),
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")),
                    conclusion=_as_optional_str(item_obj.get("conclusion")),
                    html_url=_as_optional_str(item_obj.get("html_url")),
                    steps=tuple(steps),
                )
            )

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_jobs",
            run_id=run_id,
            count=len(jobs),
        )
        return tuple(jobs)

    def get_failed_run_logs(self, run_id: int) -> str:
        cmd = ["gh", "run", "view", str(run_id), "--repo", self.full_name, "--log-failed"]
        logs = run(cmd, env=self._gh_env(), secrets=self._secrets())
        if not logs.strip():
            raise GitHubApiError(f"No failure logs were returned for workflow run {run_id}")
        log_event(
            LOGGER,
            "github_read",
            endpoint="failed_run_logs",
            run_id=run_id,
            chars=len(logs),
        )
        return logs

    def _gh_env(self) -> dict[str, str] | None:
        if not self.token:
            return None
        return {"GH_TOKEN": self.token}

    def _secrets(self) -> tuple[str, ...]:
        return (self.token,) if self.token else ()

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper, "--include", path]
            raw = run(cmd, check=False, env=self._gh_env(), secrets=self._secrets())
            try:
                status_code, _headers, body = _parse_http_response(raw)
                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise GitHubApiError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )
                return json.loads(body)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubApiError(f"GitHub GET failed for path {path}: {exc}") from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, env=self._gh_env(), secrets=self._secrets())
        if not raw.strip():
            return None
        return json.loads(raw)


def _parse_workflow_run(item_obj: dict[str, object]) -> WorkflowRun:
    return WorkflowRun(
        run_id=_as_int(item_obj.get("id"), field="id"),
        name=_as_string(item_obj.get("name")),
        status=_as_string(item_obj.get("status")).strip().lower(),
        conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
        html_url=_as_string(item_obj.get("html_url")),
        head_sha=_as_string(item_obj.get("head_sha")),
        head_branch=_as_string(item_obj.get("head_branch")),
        run_attempt=_as_optional_int(item_obj.get("run_attempt")),
        created_at=_as_string(item_obj.get("created_at")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _require_object(value: object, *, what: str) -> dict[str, object]:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        raise GitHubApiError(f"Unexpected GitHub response: expected object for {what}")
    return value_obj


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None
