from __future__ import annotations

import json

import pytest

from cibot.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    _as_int,
    _as_optional_int,
    _parse_http_response,
    _preview_for_log,
)
from cibot.models import ReviewComment
from cibot.observability import configure_logging


def _pull_payload() -> dict[str, object]:
    return {
        "number": 42,
        "id": 1042,
        "title": "Add widget",
        "body": None,
        "state": "open",
        "merged": False,
        "html_url": "https://github.com/o/r/pull/42",
        "user": {"login": "alice", "id": 5},
        "head": {"sha": "abc", "ref": "feature", "repo": {"id": 7}},
        "base": {"sha": "def", "ref": "main", "repo": {"id": "7"}},
    }


def _fake_api(responses: dict[tuple[str, str], object], calls: list[tuple[str, str, object]]):
    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return responses[(method, path)]

    return fake_api


def test_get_pull_request_parses_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str, object]] = []
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        _fake_api({("GET", "/repos/o/r/pulls/42"): _pull_payload()}, calls),
    )

    snapshot = GitHubGateway("o", "r").get_pull_request(42)

    assert snapshot.number == 42
    assert snapshot.id == 1042
    assert snapshot.body == ""
    assert snapshot.head_sha == "abc"
    assert snapshot.base_sha == "def"
    assert snapshot.head_repo_id == 7
    assert snapshot.base_repo_id == 7
    assert snapshot.author_login == "alice"
    assert snapshot.author_id == 5

    info = snapshot.to_info("o", "r")
    assert info.repo_full_name == "o/r"
    assert info.description is None
    assert info.head_ref == "feature"


def test_get_pull_request_requires_head_and_base(monkeypatch: pytest.MonkeyPatch) -> None:
    response: dict[str, object] = _pull_payload()
    response["head"] = {"ref": "feature"}
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: response
    )
    with pytest.raises(GitHubApiError, match="head/base SHA"):
        GitHubGateway("o", "r").get_pull_request(42)

    response = {"number": 1}
    with pytest.raises(GitHubApiError, match="missing pull request head/base"):
        GitHubGateway("o", "r").get_pull_request(1)


def test_list_pull_requests_filters_by_base(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str, object]] = []
    path = "/repos/o/r/pulls?state=open&base=feature&per_page=100"
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        _fake_api(
            {
                ("GET", path): [
                    {
                        "number": 43,
                        "id": 1043,
                        "html_url": "u",
                        "head": {"ref": "tensorzero/pr-42-1"},
                    },
                    "skip",
                ]
            },
            calls,
        ),
    )

    pulls = GitHubGateway("o", "r").list_pull_requests(base="feature")

    assert len(pulls) == 1
    assert pulls[0].number == 43
    assert pulls[0].head_ref == "tensorzero/pr-42-1"


def test_list_pull_requests_rejects_non_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"bad": 1}
    )
    with pytest.raises(GitHubApiError, match="expected list"):
        GitHubGateway("o", "r").list_pull_requests(base="main")


def test_write_operations_send_expected_payloads(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str, object]] = []
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        _fake_api(
            {
                ("POST", "/repos/o/r/pulls"): {"number": 43, "id": 1043, "html_url": "u43"},
                ("PATCH", "/repos/o/r/pulls/43"): {"state": "closed"},
                ("POST", "/repos/o/r/issues/42/comments"): {"id": 1},
                ("POST", "/repos/o/r/pulls/42/reviews"): {"id": 2},
                ("DELETE", "/repos/o/r/git/refs/heads/tensorzero/pr-42-1"): None,
            },
            calls,
        ),
    )
    gateway = GitHubGateway("o", "r")

    created = gateway.create_pull_request("Title", "tensorzero/pr-42-1", "feature", "Body")
    gateway.close_pull_request(43)
    gateway.post_issue_comment(42, "hello")
    gateway.create_review(
        42,
        commit_id="abc",
        comments=(ReviewComment(path="a.py", line=3, body="fix"),),
    )
    gateway.delete_branch("tensorzero/pr-42-1")

    assert created.number == 43
    assert created.id == 1043
    assert created.head_ref == "tensorzero/pr-42-1"
    assert calls[0][2] == {
        "title": "Title",
        "head": "tensorzero/pr-42-1",
        "base": "feature",
        "body": "Body",
    }
    assert calls[1][2] == {"state": "closed"}
    assert calls[2][2] == {"body": "hello"}
    assert calls[3][2] == {
        "commit_id": "abc",
        "event": "COMMENT",
        "comments": [{"path": "a.py", "line": 3, "body": "fix"}],
    }


def test_create_pull_request_failure_is_logged(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def failing_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        raise GitHubApiError("422 unprocessable")

    monkeypatch.setattr(GitHubGateway, "_api_json", failing_api)
    configure_logging(verbose="low")

    with pytest.raises(GitHubApiError):
        GitHubGateway("o", "r").create_pull_request("t", "h", "b", "body")
    with pytest.raises(GitHubApiError):
        GitHubGateway("o", "r").post_issue_comment(1, "x")

    stderr = capsys.readouterr().err
    assert "event=github_pr_create_failed" in stderr
    assert "event=github_issue_comment_failed" in stderr


def test_workflow_runs_and_latest_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    runs_path = "/repos/o/r/actions/runs?head_sha=abc&per_page=100"
    run_payload = {
        "id": 555,
        "name": "CI",
        "status": "Completed",
        "conclusion": "FAILURE",
        "html_url": "https://github.com/o/r/actions/runs/555",
        "head_sha": "abc",
        "head_branch": "feature",
        "run_attempt": 1,
        "created_at": "2024-01-02T00:00:00Z",
    }
    calls: list[tuple[str, str, object]] = []
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        _fake_api(
            {
                ("GET", "/repos/o/r/actions/runs/555"): run_payload,
                ("GET", runs_path): {
                    "workflow_runs": [
                        {**run_payload, "id": 554, "created_at": "2024-01-01T00:00:00Z"},
                        run_payload,
                        {**run_payload, "id": 556, "conclusion": "success"},
                    ]
                },
            },
            calls,
        ),
    )
    gateway = GitHubGateway("o", "r")

    workflow_run = gateway.get_workflow_run(555)
    assert workflow_run.status == "completed"
    assert workflow_run.conclusion == "failure"

    latest = gateway.find_latest_failed_workflow_run("abc")
    assert latest is not None
    assert latest.run_id == 555


def test_find_latest_failed_workflow_run_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        lambda self, method, path, payload=None: {"workflow_runs": []},
    )
    assert GitHubGateway("o", "r").find_latest_failed_workflow_run("abc") is None


def test_list_workflow_jobs_preserves_order(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        GitHubGateway,
        "_api_json",
        lambda self, method, path, payload=None: {
            "jobs": [
                {
                    "id": 2,
                    "name": "lint",
                    "status": "completed",
                    "conclusion": "failure",
                    "html_url": "u2",
                    "steps": [{"name": "eslint", "status": "completed", "conclusion": "failure"}, 3],
                },
                {"id": 1, "name": "build", "status": "completed", "conclusion": "success"},
            ]
        },
    )

    jobs = GitHubGateway("o", "r").list_workflow_jobs(555)

    assert [job.name for job in jobs] == ["lint", "build"]
    assert jobs[0].steps[0].name == "eslint"
    assert len(jobs[0].steps) == 1
    assert jobs[1].steps == ()
    assert jobs[0].to_payload()["steps"] == [
        {"name": "eslint", "status": "completed", "conclusion": "failure"}
    ]


def test_get_failed_run_logs_uses_gh_run_view(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], dict[str, object]]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        calls.append((cmd, kwargs))
        return "lint\teslint\terror: bad\n"

    monkeypatch.setattr("cibot.github_gateway.run", fake_run)

    logs = GitHubGateway("o", "r", token="tok").get_failed_run_logs(555)

    assert logs == "lint\teslint\terror: bad\n"
    cmd, kwargs = calls[0]
    assert cmd == ["gh", "run", "view", "555", "--repo", "o/r", "--log-failed"]
    assert kwargs["env"] == {"GH_TOKEN": "tok"}
    assert kwargs["secrets"] == ("tok",)


def test_get_failed_run_logs_rejects_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("cibot.github_gateway.run", lambda cmd, **kwargs: "  \n")
    with pytest.raises(GitHubApiError, match="No failure logs"):
        GitHubGateway("o", "r").get_failed_run_logs(555)


def test_api_json_invokes_gh_api(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], dict[str, object]]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        calls.append((cmd, kwargs))
        if "--include" in cmd:
            return "\n".join(("HTTP/2.0 200 OK", "Content-Type: application/json", "", '{"ok": true}'))
        return json.dumps({"ok": True})

    monkeypatch.setattr("cibot.github_gateway.run", fake_run)
    gateway = GitHubGateway("o", "r")

    assert gateway._api_json("GET", "/path") == {"ok": True}
    assert gateway._api_json("POST", "/path", payload={"k": "v"}) == {"ok": True}

    assert calls[0][0] == ["gh", "api", "--method", "GET", "--include", "/path"]
    assert calls[0][1]["check"] is False
    assert calls[0][1]["env"] is None
    assert calls[1][0] == ["gh", "api", "--method", "POST", "/path", "--input", "-"]
    assert calls[1][1]["input_text"] == '{"k": "v"}'


def test_api_json_write_with_empty_body_returns_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("cibot.github_gateway.run", lambda cmd, **kwargs: "")
    assert GitHubGateway("o", "r")._api_json("DELETE", "/path") is None


def test_api_json_get_rejects_http_errors(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    monkeypatch.setattr(
        "cibot.github_gateway.run",
        lambda cmd, **kwargs: "\n".join(("HTTP/2.0 403 Forbidden", "", '{"message":"forbidden"}')),
    )

    with pytest.raises(GitHubApiError, match="status 403"):
        GitHubGateway("o", "r")._api_json("GET", "/path")

    monkeypatch.setattr("cibot.github_gateway.run", lambda cmd, **kwargs: "not-http")
    with pytest.raises(GitHubApiError, match="GitHub GET failed for path /path"):
        GitHubGateway("o", "r")._api_json("GET", "/path")

    text = capsys.readouterr().err
    assert "event=github_get_failed" in text
    assert "raw_preview=not-http" in text


def test_parse_http_response_uses_last_status_line() -> None:
    raw = "HTTP/1.1 100 Continue\r\n\r\nHTTP/2.0 201 Created\r\nX-Test: yes\r\n\r\n{}"
    status, headers, body = _parse_http_response(raw)
    assert status == 201
    assert headers == {"x-test": "yes"}
    assert body == "{}"

    with pytest.raises(GitHubApiError, match="status line"):
        _parse_http_response("HTTP/2.0 abc")


def test_scalar_helpers() -> None:
    assert _as_int("12", field="n") == 12
    with pytest.raises(GitHubApiError):
        _as_int(True, field="n")
    with pytest.raises(GitHubApiError):
        _as_int("x", field="n")
    assert _as_optional_int("x") is None
    assert _as_optional_int(None) is None
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("x" * 5, limit=2) == "xx..."
