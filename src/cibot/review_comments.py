from __future__ import annotations

import logging
import re

from cibot.github_gateway import GitHubGateway
from cibot.models import DiffHunk, FileChange, ReviewComment
from cibot.observability import log_event


LOGGER = logging.getLogger("cibot.review_comments")
_HUNK_HEADER = re.compile(r"^@@\s+-\d+(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@")


class _HunkBuilder:
    def __init__(self, header: str, *, start_line: int, old_count: int, new_count: int) -> None:
        self.start_line = start_line
        self.line_count = new_count
        self.old_remaining = old_count
        self.new_remaining = new_count
        self.raw_lines = [header]
        self.suggested_lines: list[str] = []

    @property
    def complete(self) -> bool:
        return self.old_remaining <= 0 and self.new_remaining <= 0

    def add(self, line: str) -> None:
        self.raw_lines.append(line)
        marker, text = line[:1], line[1:]
        if marker == "+":
            self.new_remaining -= 1
            self.suggested_lines.append(text)
        elif marker == "-":
            self.old_remaining -= 1
        else:
            self.old_remaining -= 1
            self.new_remaining -= 1
            self.suggested_lines.append(text)

    def build(self) -> DiffHunk:
        return DiffHunk(
            start_line=self.start_line,
            line_count=self.line_count,
            content="\n".join(self.raw_lines),
            suggested_content="\n".join(self.suggested_lines),
        )


def parse_git_diff(diff_text: str) -> tuple[FileChange, ...]:
    """Split a unified diff into per-file hunks.

    The target path comes from the ``+++ b/<path>`` header; files whose target
    is ``/dev/null`` (deletions) are skipped. Each hunk keeps its raw text and
    a suggestion body made of its added and context lines with the diff
    markers stripped.
    """
    changes: list[FileChange] = []
    current_path: str | None = None
    hunks: list[DiffHunk] = []
    hunk: _HunkBuilder | None = None

    def flush_hunk() -> None:
        nonlocal hunk
        if hunk is not None and current_path is not None:
            hunks.append(hunk.build())
        hunk = None

    def flush_file() -> None:
        nonlocal hunks
        flush_hunk()
        if current_path is not None and hunks:
            changes.append(FileChange(path=current_path, hunks=tuple(hunks)))
        hunks = []

    for line in diff_text.splitlines():
        if hunk is not None:
            if line.startswith("\\"):
                continue
            if line == "" or line[:1] in {"+", "-", " "}:
                hunk.add(line if line else " ")
                if hunk.complete:
                    flush_hunk()
                continue
            flush_hunk()

        if line.startswith("diff --git "):
            flush_file()
            current_path = None
            continue
        if line.startswith("+++ "):
            target = line[len("+++ ") :].strip()
            if target == "/dev/null":
                current_path = None
            else:
                current_path = target[2:] if target.startswith("b/") else target
            continue
        header = _HUNK_HEADER.match(line)
        if header is not None:
            old_count, new_start, new_count = header.groups()
            hunk = _HunkBuilder(
                line,
                start_line=int(new_start),
                old_count=int(old_count) if old_count is not None else 1,
                new_count=int(new_count) if new_count is not None else 1,
            )
            if hunk.complete:
                flush_hunk()
    flush_file()
    return tuple(changes)


def create_review_comments(
    changes: tuple[FileChange, ...], reasoning: str
) -> tuple[ReviewComment, ...]:
    comments: list[ReviewComment] = []
    for change in changes:
        for hunk in change.hunks:
            # A pure deletion has no line on the new side to anchor to.
            if hunk.line_count < 1:
                continue
            body = (
                "**Suggested fix:**\n\n"
                f"```suggestion\n{hunk.suggested_content}\n```\n\n"
                f"{reasoning}"
            )
            comments.append(
                ReviewComment(
                    path=change.path,
                    line=hunk.start_line + hunk.line_count - 1,
                    body=body,
                )
            )
    return tuple(comments)


def post_review_comments(
    github: GitHubGateway,
    pr_number: int,
    comments: tuple[ReviewComment, ...],
    head_sha: str,
) -> None:
    if not comments:
        log_event(LOGGER, "review_comments_skipped", pr_number=pr_number, reason="no_comments")
        return
    github.create_review(pr_number, commit_id=head_sha, comments=comments)
    log_event(
        LOGGER,
        "review_comments_posted",
        pr_number=pr_number,
        comment_count=len(comments),
    )
