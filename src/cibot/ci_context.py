from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging
from pathlib import Path

from cibot.models import FailedJobSummary, FailedStepSummary, WorkflowJob
from cibot.observability import log_event


LOGGER = logging.getLogger("cibot.ci_context")
CONTEXT_FILENAME = "ci_failure_context.md"


@dataclass(frozen=True)
class CIFailureContext:
    repo_full_name: str
    branch: str
    pr_number: int
    pr_url: str
    workflow_run_id: int | None
    workflow_run_url: str | None
    failed_jobs: tuple[FailedJobSummary, ...]
    diff_summary: str
    full_diff: str
    failure_logs: str
    pr_description: str | None = None


def collect_failed_jobs(jobs: Iterable[WorkflowJob]) -> tuple[FailedJobSummary, ...]:
    failed: list[FailedJobSummary] = []
    for job in jobs:
        if job.conclusion == "success":
            continue
        failed.append(
            FailedJobSummary(
                name=job.name,
                conclusion=job.conclusion,
                html_url=job.html_url,
                failed_steps=tuple(
                    FailedStepSummary(
                        name=step.name,
                        status=step.status,
                        conclusion=step.conclusion,
                    )
                    for step in job.steps
                    if step.conclusion and step.conclusion != "success"
                ),
            )
        )
    return tuple(failed)


def _render_failed_jobs(failed_jobs: tuple[FailedJobSummary, ...]) -> str:
    if not failed_jobs:
        return "No failed jobs were reported for this run."
    sections: list[str] = []
    for job in failed_jobs:
        lines = [f"### Job: {job.name}", ""]
        if job.conclusion:
            lines.append(f"- **Conclusion**: {job.conclusion}")
        if job.html_url:
            lines.append(f"- **URL**: {job.html_url}")
        lines.extend(["", "**Failed Steps:**", ""])
        for step in job.failed_steps:
            lines.append(f"- **{step.name}**")
            lines.append(f"  - Status: {step.status or 'unknown'}")
            lines.append(f"  - Conclusion: {step.conclusion or 'unknown'}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def _render_task(context: CIFailureContext) -> str:
    if context.workflow_run_id is None:
        return """
Review and improve the changes in this pull request. You need to:

1. Review the PR diff to understand what changes were made
2. Look for bugs, missing tests, and style problems in the changed code
3. Make targeted improvements
4. Run validation commands to ensure your changes work
5. Decide whether to propose inline suggestions or a pull request
""".strip()
    return """
Fix the CI failures in this pull request. The tests and checks are failing, and you need to:

1. Analyze the failure logs below to understand what went wrong
2. Review the PR diff to understand what changes were made
3. Make targeted fixes to resolve the failures
4. Run validation commands to ensure your fixes work
5. Decide whether to propose inline suggestions or a pull request
""".strip()


def render_failure_context(context: CIFailureContext) -> str:
    """Render the markdown brief the agent reads before editing the working copy.

    Section order is fixed: Overview, Your Task, Failed Jobs and Steps,
    PR Diff Summary, Full PR Diff, Failure Logs, Validation Instructions,
    then the decision criteria and completion format.
    """
    run_id = str(context.workflow_run_id) if context.workflow_run_id is not None else "n/a"
    run_url = context.workflow_run_url or "n/a"
    description = ""
    if context.pr_description and context.pr_description.strip():
        description = f"\n### PR Description\n\n{context.pr_description.strip()}\n"
    return f"""
# CI Failure Context

## Overview

- **Repository**: {context.repo_full_name}
- **Branch**: {context.branch}
- **Pull Request**: #{context.pr_number}
- **PR URL**: {context.pr_url}
- **Workflow Run ID**: {run_id}
- **Workflow Run URL**: {run_url}
{description}
## Your Task

{_render_task(context)}

## Failed Jobs and Steps

{_render_failed_jobs(context.failed_jobs)}

## PR Diff Summary

```
{context.diff_summary}
```

## Full PR Diff

```diff
{context.full_diff}
```

## Failure Logs

```
{context.failure_logs}
```

## Validation Instructions

After making your changes, you MUST validate them by running:

1. **The specific failing tests** - Rerun the tests that failed to ensure they now pass
2. **Linters and formatters** - Run code quality tools to ensure your changes meet style guidelines
3. **Build the project** - Ensure the project still compiles/builds successfully
4. **Language-specific checks** - Run type checkers, cargo clippy, etc. as appropriate

Do not edit or commit {CONTEXT_FILENAME}; it is removed before your changes are collected.

## Decision Criteria

When you've successfully fixed and validated the changes, decide how to present your fix:

**Use INLINE_SUGGESTIONS when:**
- Changes are localized to 1-2 files
- Changes are simple and straightforward
- Total lines changed is small (<20 lines)

**Use PULL_REQUEST when:**
- Changes span multiple files (3+)
- Changes are complex or require significant refactoring
- You need human review for confidence

## Completion Format

Finish with a submission whose lines use these prefixes:

```
DECISION: INLINE_SUGGESTIONS or PULL_REQUEST
REASONING: one or two sentences explaining the fix
```
""".strip() + "\n"


def write_failure_context_file(repo_dir: Path, context: CIFailureContext) -> Path:
    path = repo_dir / CONTEXT_FILENAME
    path.write_text(render_failure_context(context), encoding="utf-8")
    log_event(
        LOGGER,
        "failure_context_written",
        path=str(path),
        failed_job_count=len(context.failed_jobs),
        pr_number=context.pr_number,
    )
    return path


def remove_failure_context_file(repo_dir: Path) -> None:
    path = repo_dir / CONTEXT_FILENAME
    path.unlink(missing_ok=True)
