from __future__ import annotations

from dataclasses import dataclass


COMMENT_HEADING = "### TensorZero CI Bot Automated Comment"


@dataclass(frozen=True)
class CommentContext:
    generated_comment_body: str | None = None
    followup_pr_number: int | None = None
    commands: tuple[str, ...] = ()
    followup_pr_creation_error: str | None = None
    generated_patch: str | None = None


def render_comment(context: CommentContext) -> str | None:
    """Render the diagnostic comment posted on the original pull request.

    Returns None when there is nothing worth saying. The patch is only shown
    alongside a follow-up PR creation error.
    """
    if (
        not context.generated_comment_body
        and not context.followup_pr_creation_error
        and not context.followup_pr_number
        and not context.commands
    ):
        return None

    sections = [COMMENT_HEADING]
    if context.generated_comment_body:
        sections.append(context.generated_comment_body.strip())
    if context.commands:
        command_lines = "\n".join(context.commands)
        sections.append(
            "Try running the following commands to address the issues:\n\n"
            f"```\n{command_lines}\n```"
        )
    if context.followup_pr_number:
        sections.append(
            f"I've opened an automated follow-up PR #{context.followup_pr_number} "
            "with proposed fixes."
        )
    if context.followup_pr_creation_error:
        sections.append(
            "> [!WARNING]\n"
            "> I encountered an error while trying to create a follow-up PR: "
            f"{context.followup_pr_creation_error}."
        )
        if context.generated_patch:
            sections.append(
                "The patch I tried to generate is as follows:\n"
                f"```diff\n{context.generated_patch.strip()}\n```"
            )
        else:
            sections.append("No patch was generated.")
    return "\n\n".join(sections).strip()
