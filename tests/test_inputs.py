from __future__ import annotations

from pathlib import Path

import pytest

from cibot.events import EventError, WorkflowRunEvent, parse_workflow_run_event
from cibot.github_gateway import GitHubApiError, GitHubGateway
from cibot.inputs import build_input_from_cli, build_input_from_event, fetch_ci_failure_info
from cibot.models import PullRequestSnapshot, WorkflowJob, WorkflowJobStep, WorkflowRun


def _snapshot() -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=42,
        id=1042,
        title="Add widget",
        body="Adds the widget.",
        state="open",
        merged=False,
        html_url="https://github.com/o/r/pull/42",
        head_sha="abc1234567",
        head_ref="feature",
        head_repo_id=7,
        base_sha="def",
        base_ref="main",
        base_repo_id=7,
    )


def _run(conclusion: str | None = "failure") -> WorkflowRun:
    return WorkflowRun(
        run_id=555,
        name="CI",
        status="completed",
        conclusion=conclusion,
        html_url="https://github.com/o/r/actions/runs/555",
        head_sha="abc1234567",
        head_branch="feature",
        run_attempt=1,
        created_at="2024-05-01T12:00:00Z",
    )


JOBS = (
    WorkflowJob(
        job_id=1,
        name="lint",
        status="completed",
        conclusion="failure",
        html_url="https://github.com/o/r/actions/runs/555/job/1",
        steps=(
            WorkflowJobStep(name="checkout", status="completed", conclusion="success"),
            WorkflowJobStep(name="eslint", status="completed", conclusion="failure"),
        ),
    ),
    WorkflowJob(
        job_id=2,
        name="test",
        status="completed",
        conclusion="success",
        html_url=None,
    ),
)


class _FakeGitHub:
    def __init__(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self.calls: list[tuple[str, object]] = []
        self.run = _run()
        self.latest: WorkflowRun | None = _run()
        self.jobs_error: Exception | None = None

        def get_pull_request(gw: GitHubGateway, number: int) -> PullRequestSnapshot:
            self.calls.append(("get_pull_request", number))
            return _snapshot()

        def find_latest_failed_workflow_run(gw: GitHubGateway, head_sha: str) -> WorkflowRun | None:
            self.calls.append(("find_latest_failed_workflow_run", head_sha))
            return self.latest

        def get_workflow_run(gw: GitHubGateway, run_id: int) -> WorkflowRun:
            self.calls.append(("get_workflow_run", run_id))
            return self.run

        def list_workflow_jobs(gw: GitHubGateway, run_id: int) -> tuple[WorkflowJob, ...]:
            self.calls.append(("list_workflow_jobs", run_id))
            if self.jobs_error is not None:
                raise self.jobs_error
            return JOBS

        def get_failed_run_logs(gw: GitHubGateway, run_id: int) -> str:
            self.calls.append(("get_failed_run_logs", run_id))
            return "src/a.ts:1 Missing semicolon"

        for name, fn in (
            ("get_pull_request", get_pull_request),
            ("find_latest_failed_workflow_run", find_latest_failed_workflow_run),
            ("get_workflow_run", get_workflow_run),
            ("list_workflow_jobs", list_workflow_jobs),
            ("get_failed_run_logs", get_failed_run_logs),
        ):
            monkeypatch.setattr(GitHubGateway, name, fn)


def _event(**overrides: object) -> WorkflowRunEvent:
    pull_request: dict[str, object] = {
        "number": 42,
        "head": {"ref": "feature", "sha": "abc1234567", "repo": {"id": 7, "name": "r"}},
        "base": {"ref": "main", "repo": {"id": 7, "name": "r"}},
    }
    pull_request.update(overrides)
    return parse_workflow_run_event(
        {
            "workflow_run": {
                "id": 555,
                "conclusion": "failure",
                "html_url": "https://github.com/o/r/actions/runs/555",
                "pull_requests": [pull_request],
            },
            "repository": {"name": "r", "owner": {"login": "o"}, "default_branch": "main"},
        }
    )


def test_fetch_ci_failure_info_collects_failed_jobs_and_logs(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeGitHub(monkeypatch)

    info = fetch_ci_failure_info(GitHubGateway("o", "r"), 555)

    assert info is not None
    assert info.workflow_run_id == 555
    assert info.workflow_run_url == "https://github.com/o/r/actions/runs/555"
    assert [job.name for job in info.failed_jobs] == ["lint"]
    assert [step.name for step in info.failed_jobs[0].failed_steps] == ["eslint"]
    assert info.failure_logs == "src/a.ts:1 Missing semicolon"


def test_fetch_ci_failure_info_ignores_successful_run(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)
    fake.run = _run(conclusion="success")

    assert fetch_ci_failure_info(GitHubGateway("o", "r"), 555) is None
    assert [name for name, _ in fake.calls] == ["get_workflow_run"]


def test_fetch_ci_failure_info_degrades_on_api_error(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)
    fake.jobs_error = GitHubApiError("boom")

    assert fetch_ci_failure_info(GitHubGateway("o", "r"), 555) is None


def test_build_input_from_cli_finds_latest_failed_run(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    fake = _FakeGitHub(monkeypatch)

    runner_input = build_input_from_cli(
        GitHubGateway("o", "r"),
        pr_number=42,
        dry_run=True,
        output_dir=tmp_path,
        cost_limit=1.5,
        timeout_minutes=10,
    )

    assert ("find_latest_failed_workflow_run", "abc1234567") in fake.calls
    assert runner_input.pull_request.repo_full_name == "o/r"
    assert runner_input.pull_request.description == "Adds the widget."
    assert runner_input.head_repo_id == 7
    assert runner_input.ci_failure is not None
    assert runner_input.ci_failure.workflow_run_id == 555
    assert runner_input.dry_run is True
    assert runner_input.output_dir == tmp_path
    assert runner_input.cost_limit == 1.5
    assert runner_input.timeout_seconds == 600


def test_build_input_from_cli_uses_explicit_run_id(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)

    runner_input = build_input_from_cli(GitHubGateway("o", "r"), pr_number=42, workflow_run_id=555)

    assert "find_latest_failed_workflow_run" not in [name for name, _ in fake.calls]
    assert runner_input.ci_failure is not None
    assert runner_input.timeout_seconds is None


def test_build_input_from_cli_without_failed_run_reviews_only(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = _FakeGitHub(monkeypatch)
    fake.latest = None

    runner_input = build_input_from_cli(GitHubGateway("o", "r"), pr_number=42)

    assert runner_input.ci_failure is None
    assert "get_workflow_run" not in [name for name, _ in fake.calls]


def test_build_input_from_event_for_eligible_run(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)

    runner_input = build_input_from_event(GitHubGateway("o", "r"), _event())

    assert runner_input is not None
    assert runner_input.pull_request.number == 42
    assert runner_input.ci_failure is not None
    assert runner_input.ci_failure.workflow_run_url == "https://github.com/o/r/actions/runs/555"
    assert [job.name for job in runner_input.ci_failure.failed_jobs] == ["lint"]
    assert runner_input.dry_run is False
    assert ("get_pull_request", 42) in fake.calls


def test_build_input_from_event_skips_fork(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)
    event = _event(head={"ref": "feature", "sha": "abc", "repo": {"id": 8, "name": "fork"}})

    assert build_input_from_event(GitHubGateway("o", "r"), event) is None
    assert fake.calls == []


def test_build_input_from_event_requires_pull_request_number(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeGitHub(monkeypatch)
    event = _event(number=None)

    with pytest.raises(EventError, match="pull request number"):
        build_input_from_event(GitHubGateway("o", "r"), event)
