from __future__ import annotations

import pytest

from cibot.followup_cleanup import (
    close_comment_body,
    close_followup_prs_for_parent,
    find_followup_prs,
)
from cibot.github_gateway import GitHubApiError, GitHubGateway
from cibot.models import PullRequest
from cibot.observability import configure_logging


NAMESPACE = "tensorzero/ci-bot"


def _pull(number: int, head_ref: str) -> PullRequest:
    return PullRequest(
        number=number,
        id=1000 + number,
        html_url=f"https://github.com/o/r/pull/{number}",
        head_ref=head_ref,
    )


OPEN_PULLS = (
    _pull(43, f"{NAMESPACE}/pr-42-1700000000000"),
    _pull(44, f"{NAMESPACE}/pr-42-1700000000999"),
    _pull(45, f"{NAMESPACE}/pr-420-1700000000000"),
    _pull(46, "someone/feature-branch"),
    _pull(47, f"{NAMESPACE}/pr-42"),
)


class _FakeGitHub:
    def __init__(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self.calls: list[tuple[str, object]] = []
        self.fail_close: set[int] = set()
        self.fail_delete: set[str] = set()

        def list_pull_requests(gw: GitHubGateway, *, base: str, state: str = "open"):  # type: ignore[no-untyped-def]
            self.calls.append(("list", (base, state)))
            return OPEN_PULLS

        def post_issue_comment(gw: GitHubGateway, number: int, body: str) -> None:
            self.calls.append(("comment", number))

        def close_pull_request(gw: GitHubGateway, number: int) -> None:
            if number in self.fail_close:
                raise GitHubApiError("403 Forbidden")
            self.calls.append(("close", number))

        def delete_branch(gw: GitHubGateway, branch: str) -> None:
            if branch in self.fail_delete:
                raise GitHubApiError("422 Reference does not exist")
            self.calls.append(("delete", branch))

        monkeypatch.setattr(GitHubGateway, "list_pull_requests", list_pull_requests)
        monkeypatch.setattr(GitHubGateway, "post_issue_comment", post_issue_comment)
        monkeypatch.setattr(GitHubGateway, "close_pull_request", close_pull_request)
        monkeypatch.setattr(GitHubGateway, "delete_branch", delete_branch)


def test_find_followup_prs_matches_parent_number_exactly(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)

    found = find_followup_prs(
        GitHubGateway("o", "r"),
        parent_number=42,
        parent_head_ref="feature",
        namespace=NAMESPACE,
    )

    assert [pull.number for pull in found] == [43, 44]
    assert fake.calls == [("list", ("feature", "open"))]


def test_close_followups_comments_closes_and_deletes(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)

    result = close_followup_prs_for_parent(
        GitHubGateway("o", "r"),
        parent_number=42,
        parent_head_ref="feature",
        parent_merged=True,
        namespace=NAMESPACE,
    )

    assert result.closed == 2
    assert result.errors == ()
    assert fake.calls[1:] == [
        ("comment", 43),
        ("close", 43),
        ("delete", f"{NAMESPACE}/pr-42-1700000000000"),
        ("comment", 44),
        ("close", 44),
        ("delete", f"{NAMESPACE}/pr-42-1700000000999"),
    ]


def test_close_failure_is_collected_and_others_continue(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=False)
    fake = _FakeGitHub(monkeypatch)
    fake.fail_close.add(43)

    result = close_followup_prs_for_parent(
        GitHubGateway("o", "r"),
        parent_number=42,
        parent_head_ref="feature",
        parent_merged=False,
        namespace=NAMESPACE,
    )

    assert result.closed == 1
    assert result.errors == ("PR #43: 403 Forbidden",)
    assert ("close", 44) in fake.calls
    assert ("delete", f"{NAMESPACE}/pr-42-1700000000000") not in fake.calls
    assert "event=followup_pr_close_failed" in capsys.readouterr().err


def test_branch_delete_failure_still_counts_as_closed(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=False)
    fake = _FakeGitHub(monkeypatch)
    fake.fail_delete.add(f"{NAMESPACE}/pr-42-1700000000000")

    result = close_followup_prs_for_parent(
        GitHubGateway("o", "r"),
        parent_number=42,
        parent_head_ref="feature",
        parent_merged=True,
        namespace=NAMESPACE,
    )

    assert result.closed == 2
    assert result.errors == ()
    assert "event=followup_branch_delete_failed" in capsys.readouterr().err


def test_no_followups_is_a_no_op(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGitHub(monkeypatch)

    result = close_followup_prs_for_parent(
        GitHubGateway("o", "r"),
        parent_number=7,
        parent_head_ref="feature",
        parent_merged=True,
        namespace=NAMESPACE,
    )

    assert result.closed == 0
    assert [name for name, _ in fake.calls] == ["list"]


@pytest.mark.parametrize(("merged", "verb"), [(True, "merged"), (False, "closed")])
def test_close_comment_body_names_parent_outcome(merged: bool, verb: str) -> None:
    body = close_comment_body(42, merged)

    assert body.startswith("## This PR has been automatically closed")
    assert f"The base PR #42 has been {verb}." in body
