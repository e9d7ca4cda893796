from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from cibot.config import TensorZeroConfig
from cibot.events import WorkflowRunEvent, parse_workflow_run_event
from cibot.generate_patch import run_generate_patch
from cibot.github_gateway import GitHubGateway
from cibot.manifest import load_manifest, read_commands, read_comment, read_patch
from cibot.models import PullRequestDiff, PullRequestInfo, PullRequestSnapshot, WorkflowJob, WorkflowJobStep
from cibot.tensorzero import GenerationError, TensorZeroClient


def _event(*, head_repo_id: int = 7) -> WorkflowRunEvent:
    return parse_workflow_run_event(
        {
            "workflow_run": {
                "id": 555,
                "run_attempt": 1,
                "name": "CI",
                "conclusion": "failure",
                "head_branch": "feature",
                "pull_requests": [
                    {
                        "number": 42,
                        "head": {"ref": "feature", "repo": {"id": head_repo_id}},
                        "base": {"ref": "main", "repo": {"id": 7}},
                    }
                ],
            },
            "repository": {"name": "r", "owner": {"login": "o"}, "default_branch": "main"},
        }
    )


def _snapshot() -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=42,
        id=1042,
        title="t",
        body="",
        state="open",
        merged=False,
        html_url="https://github.com/o/r/pull/42",
        head_sha="abc",
        head_ref="feature",
        head_repo_id=7,
        base_sha="def",
        base_ref="main",
        base_repo_id=7,
        author_login="alice",
        author_id=5,
    )


def _install_github(monkeypatch: pytest.MonkeyPatch, calls: list[str]) -> None:
    def fake_jobs(self: GitHubGateway, run_id: int) -> tuple[WorkflowJob, ...]:
        calls.append(f"jobs:{run_id}")
        return (
            WorkflowJob(
                job_id=1,
                name="lint",
                status="completed",
                conclusion="failure",
                html_url=None,
                steps=(WorkflowJobStep(name="eslint", status="completed", conclusion="failure"),),
            ),
            WorkflowJob(job_id=2, name="build", status="completed", conclusion="success", html_url=None),
        )

    def fake_pr(self: GitHubGateway, pr_number: int) -> PullRequestSnapshot:
        calls.append(f"pr:{pr_number}")
        return _snapshot()

    def fake_logs(self: GitHubGateway, run_id: int) -> str:
        calls.append(f"logs:{run_id}")
        return "lint\teslint\terror: missing semicolon\n"

    def forbidden(*args: object, **kwargs: object) -> None:
        raise AssertionError("generate phase must not write to GitHub")

    monkeypatch.setattr(GitHubGateway, "list_workflow_jobs", fake_jobs)
    monkeypatch.setattr(GitHubGateway, "get_pull_request", fake_pr)
    monkeypatch.setattr(GitHubGateway, "get_failed_run_logs", fake_logs)
    monkeypatch.setattr(GitHubGateway, "post_issue_comment", forbidden)
    monkeypatch.setattr(GitHubGateway, "create_pull_request", forbidden)

    def fake_diff(token: str, pull_request: PullRequestInfo) -> PullRequestDiff:
        assert token == "tok"
        assert pull_request.head_ref == "feature"
        return PullRequestDiff(diff_summary=" a.ts | 1 +", full_diff="diff --git a/a.ts b/a.ts")

    monkeypatch.setattr("cibot.generate_patch.get_pull_request_diff", fake_diff)


def _tensorzero(content: str, requests: list[httpx.Request]) -> TensorZeroClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "id": "inf-1",
                "episode_id": "ep-1",
                "choices": [{"message": {"content": content}}],
            },
        )

    return TensorZeroClient(
        TensorZeroConfig(base_url="http://gateway"),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


CONTENT = """
<comments>
The lint job failed because of a missing semicolon.
</comments>
<diff>
diff --git a/a.ts b/a.ts
--- a/a.ts
+++ b/a.ts
@@ -1,2 +1,2 @@
-const x = 1
+const x = 1;
 
</diff>
<command>npm run lint</command>
<command> </command>
<command>npm test</command>
"""


def test_run_generate_patch_writes_manifest_and_artifacts(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[str] = []
    requests: list[httpx.Request] = []
    _install_github(monkeypatch, calls)

    outcome = run_generate_patch(
        _event(),
        github=GitHubGateway("o", "r"),
        token="tok",
        tensorzero=_tensorzero(CONTENT, requests),
        diff_patched_metric_name="ci_fix_diff_patched",
        output_dir=tmp_path,
    )

    assert outcome.skipped is False
    manifest = load_manifest(tmp_path)
    assert manifest == outcome.manifest
    assert manifest.workflow_run.id == 555
    assert manifest.pull_request.head_sha == "abc"
    assert manifest.pull_request.base_sha == "def"
    assert manifest.pull_request.author is not None
    assert manifest.llm.inference_id == "inf-1"
    assert manifest.llm.response_id == "inf-1"
    assert manifest.llm.episode_id == "ep-1"
    assert manifest.tensorzero.diff_patched_metric_name == "ci_fix_diff_patched"
    assert manifest.metadata.has_diff and manifest.metadata.has_comment and manifest.metadata.has_commands

    assert read_patch(tmp_path / "generated-patch.diff").startswith("diff --git a/a.ts b/a.ts")
    assert read_patch(tmp_path / "generated-patch.diff").endswith("+const x = 1;\n \n")
    assert read_comment(tmp_path / "generated-comment.md") == (
        "The lint job failed because of a missing semicolon."
    )
    assert read_commands(tmp_path / "commands.json") == ("npm run lint", "npm test")

    jobs = json.loads((tmp_path / "workflow-jobs.json").read_text(encoding="utf-8"))
    assert [job["name"] for job in jobs] == ["lint", "build"]
    assert (tmp_path / "failure-logs.txt").exists()
    assert json.loads((tmp_path / "llm-response.json").read_text(encoding="utf-8"))["id"] == "inf-1"

    arguments = json.loads(requests[0].content)["messages"][0]["content"][0]["arguments"]
    assert [job["name"] for job in arguments["failed_jobs"]] == ["lint"]
    assert arguments["branch"] == "feature"
    assert calls == ["jobs:555", "pr:42", "logs:555"]


def test_run_generate_patch_skips_ineligible_events(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[str] = []
    requests: list[httpx.Request] = []
    _install_github(monkeypatch, calls)

    outcome = run_generate_patch(
        _event(head_repo_id=8),
        github=GitHubGateway("o", "r"),
        token="tok",
        tensorzero=_tensorzero(CONTENT, requests),
        diff_patched_metric_name="m",
        output_dir=tmp_path / "out",
    )

    assert outcome.skipped is True
    assert outcome.manifest is None
    assert calls == []
    assert requests == []
    assert not (tmp_path / "out").exists()


def test_run_generate_patch_empty_response_raises(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _install_github(monkeypatch, [])

    with pytest.raises(GenerationError, match="No LLM response"):
        run_generate_patch(
            _event(),
            github=GitHubGateway("o", "r"),
            token="tok",
            tensorzero=_tensorzero("   ", []),
            diff_patched_metric_name="m",
            output_dir=tmp_path,
        )
    assert not (tmp_path / "manifest.json").exists()


def test_run_generate_patch_comment_only(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _install_github(monkeypatch, [])

    outcome = run_generate_patch(
        _event(),
        github=GitHubGateway("o", "r"),
        token="tok",
        tensorzero=_tensorzero("<comments>Flaky test; rerun.</comments>", []),
        diff_patched_metric_name="m",
        output_dir=tmp_path,
    )

    assert outcome.manifest is not None
    assert outcome.manifest.metadata.has_diff is False
    assert outcome.manifest.outputs.generated_patch_path is None
    assert not (tmp_path / "generated-patch.diff").exists()
