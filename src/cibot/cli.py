from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from cibot.analytics import InferenceRecorder
from cibot.apply_artifacts import run_apply_artifacts
from cibot.config import AppConfig, ConfigError, load_config, resolve_github_token
from cibot.events import (
    RepositoryRef,
    load_event_payload,
    parse_closed_pull_request_event,
    parse_workflow_run_event,
)
from cibot.followup_cleanup import close_followup_prs_for_parent
from cibot.generate_patch import run_generate_patch
from cibot.github_gateway import GitHubGateway
from cibot.inputs import AgentRunnerInput, build_input_from_cli, build_input_from_event
from cibot.observability import configure_logging, log_event, log_warning, register_secret
from cibot.outputs import set_action_output
from cibot.pr_feedback import run_pr_feedback
from cibot.runner import AgentRunner, AgentRunnerResult
from cibot.shell import mask_secrets
from cibot.tensorzero import TensorZeroClient


LOGGER = logging.getLogger("cibot.cli")
DEFAULT_CONFIG_PATH = Path("cibot.toml")


def _add_common_arguments(parser: argparse.ArgumentParser, *, event_path: bool = True) -> None:
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default="low",
        choices=("low", "high"),
        help="Logging verbosity on stderr (default: low; bare -v means high)",
    )
    parser.add_argument(
        "--token",
        type=str,
        help="GitHub token; defaults to the configured env var, then `gh auth token`",
    )
    if event_path:
        parser.add_argument(
            "--event-path",
            type=Path,
            help="Event payload JSON; defaults to $GITHUB_EVENT_PATH",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cibot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fix_parser = subparsers.add_parser(
        "fix", help="Run the agent locally against one pull request"
    )
    _add_common_arguments(fix_parser, event_path=False)
    fix_parser.add_argument("--repo", "-r", type=str, required=True, help="owner/name")
    fix_parser.add_argument("--pr", "-p", type=int, required=True, help="Pull request number")
    fix_parser.add_argument(
        "--dry-run",
        "-d",
        action="store_true",
        help="Print the agent's patch without creating PRs or comments",
    )
    fix_parser.add_argument(
        "--workflow-run-id",
        "-w",
        type=int,
        help="Failed workflow run to use; defaults to the latest failed run for the PR head",
    )
    fix_parser.add_argument("--output-dir", "-o", type=Path, help="Debug artifact directory")
    fix_parser.add_argument("--cost-limit", "-c", type=float, help="Agent cost ceiling")
    fix_parser.add_argument("--timeout", type=int, help="Agent timeout in minutes")

    fix_event_parser = subparsers.add_parser(
        "fix-event", help="Run the agent for a failed workflow_run event"
    )
    _add_common_arguments(fix_event_parser)
    fix_event_parser.add_argument("--output-dir", type=Path, help="Debug artifact directory")

    generate_parser = subparsers.add_parser(
        "generate-patch",
        help="Untrusted phase: generate a patch and write it as a manifest plus artifacts",
    )
    _add_common_arguments(generate_parser)
    generate_parser.add_argument("--output-dir", type=Path, help="Artifact output directory")

    apply_parser = subparsers.add_parser(
        "apply-artifacts",
        help="Privileged phase: validate generated artifacts and open the follow-up PR",
    )
    _add_common_arguments(apply_parser)
    apply_parser.add_argument("--artifact-dir", type=Path, required=True)
    apply_parser.add_argument("--manifest-path", type=str, default="manifest.json")

    feedback_parser = subparsers.add_parser(
        "pr-feedback", help="Send merged/rejected feedback for a closed follow-up PR"
    )
    _add_common_arguments(feedback_parser)

    close_parser = subparsers.add_parser(
        "close-followups", help="Close follow-up PRs whose parent PR was closed"
    )
    _add_common_arguments(close_parser)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config, missing_ok=args.config == DEFAULT_CONFIG_PATH)
    configure_logging(
        args.verbose,
        log_dir=config.artifacts.log_dir,
        annotations=os.environ.get("GITHUB_ACTIONS") == "true",
    )

    try:
        _dispatch(config, args)
    except Exception as exc:  # noqa: BLE001
        log_warning(
            LOGGER,
            "cli_command_failed",
            command=args.command,
            error_type=type(exc).__name__,
        )
        raise


def _dispatch(config: AppConfig, args: argparse.Namespace) -> None:
    if args.command == "fix":
        _cmd_fix(config, args)
        return
    if args.command == "fix-event":
        _cmd_fix_event(config, args)
        return
    if args.command == "generate-patch":
        _cmd_generate_patch(config, args)
        return
    if args.command == "apply-artifacts":
        _cmd_apply_artifacts(config, args)
        return
    if args.command == "pr-feedback":
        _cmd_pr_feedback(config, args)
        return
    if args.command == "close-followups":
        _cmd_close_followups(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _resolve_token(config: AppConfig, args: argparse.Namespace) -> str:
    token = resolve_github_token(config.github, explicit=args.token)
    register_secret(token)
    return token


def _parse_repo(full_name: str) -> tuple[str, str]:
    owner, sep, name = full_name.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"Repository must be given as owner/name, got {full_name!r}")
    return owner, name


def _require_repository(repository: RepositoryRef | None) -> RepositoryRef:
    if repository is None:
        raise ConfigError(
            "Unable to determine the repository from the event or $GITHUB_REPOSITORY"
        )
    return repository


def _optional_tensorzero(config: AppConfig) -> TensorZeroClient | None:
    if config.tensorzero is None:
        return None
    return TensorZeroClient(config.tensorzero)


def _cmd_fix(config: AppConfig, args: argparse.Namespace) -> None:
    owner, name = _parse_repo(args.repo)
    token = _resolve_token(config, args)
    github = GitHubGateway(owner, name, token=token)
    runner_input = build_input_from_cli(
        github,
        pr_number=args.pr,
        workflow_run_id=args.workflow_run_id,
        dry_run=bool(args.dry_run),
        output_dir=args.output_dir or config.artifacts.output_dir,
        cost_limit=args.cost_limit,
        timeout_minutes=args.timeout,
    )
    result = _execute_runner(config, github, token, runner_input)
    if runner_input.dry_run and result.diff:
        print(f"[dry run] decision: {result.decision}")
        print(f"[dry run] reasoning: {result.reasoning}")
        print(result.diff)
    _report_runner_result(result, token=token)


def _cmd_fix_event(config: AppConfig, args: argparse.Namespace) -> None:
    event = parse_workflow_run_event(load_event_payload(args.event_path))
    repository = _require_repository(event.repository)
    token = _resolve_token(config, args)
    github = GitHubGateway(repository.owner, repository.name, token=token)
    runner_input = build_input_from_event(
        github, event, output_dir=args.output_dir or config.artifacts.output_dir
    )
    if runner_input is None:
        return
    result = _execute_runner(config, github, token, runner_input)
    if result.followup_pr_number is not None:
        set_action_output("followup-pr-number", result.followup_pr_number)
    _report_runner_result(result, token=token)


def _execute_runner(
    config: AppConfig, github: GitHubGateway, token: str, runner_input: AgentRunnerInput
) -> AgentRunnerResult:
    tensorzero = _optional_tensorzero(config)
    recorder = (
        InferenceRecorder(config.clickhouse)
        if config.clickhouse is not None and not runner_input.dry_run
        else None
    )
    try:
        runner = AgentRunner(
            config,
            github=github,
            token=token,
            tensorzero=tensorzero,
            recorder=recorder,
        )
        return runner.run(runner_input)
    finally:
        if tensorzero is not None:
            tensorzero.close()
        if recorder is not None:
            recorder.close()


def _report_runner_result(result: AgentRunnerResult, *, token: str) -> None:
    if result.success:
        print(
            f"decision={result.decision} followup_pr_number={result.followup_pr_number} "
            f"has_diff={result.diff is not None}"
        )
        return
    print(f"Agent run failed: {mask_secrets(result.error or 'unknown error', (token,))}")
    raise SystemExit(1)


def _cmd_generate_patch(config: AppConfig, args: argparse.Namespace) -> None:
    tensorzero_config = config.require_tensorzero()
    if tensorzero_config.diff_patched_metric_name is None:
        raise ConfigError("tensorzero.diff_patched_metric_name is required for generate-patch")
    output_dir = args.output_dir or config.artifacts.output_dir
    if output_dir is None:
        raise ConfigError("An artifact directory is required; pass --output-dir")

    event = parse_workflow_run_event(load_event_payload(args.event_path))
    repository = _require_repository(event.repository)
    token = _resolve_token(config, args)
    github = GitHubGateway(repository.owner, repository.name, token=token)
    with TensorZeroClient(tensorzero_config) as tensorzero:
        outcome = run_generate_patch(
            event,
            github=github,
            token=token,
            tensorzero=tensorzero,
            diff_patched_metric_name=tensorzero_config.diff_patched_metric_name,
            output_dir=output_dir,
        )
    if outcome.manifest is not None:
        print(f"Wrote manifest to {output_dir / 'manifest.json'}")


def _cmd_apply_artifacts(config: AppConfig, args: argparse.Namespace) -> None:
    tensorzero_config = config.require_tensorzero()
    clickhouse_config = config.require_clickhouse()
    event = parse_workflow_run_event(load_event_payload(args.event_path))
    repository = _require_repository(event.repository)
    token = _resolve_token(config, args)
    github = GitHubGateway(repository.owner, repository.name, token=token)
    with (
        TensorZeroClient(tensorzero_config) as tensorzero,
        InferenceRecorder(clickhouse_config) as recorder,
    ):
        outcome = run_apply_artifacts(
            event,
            github=github,
            token=token,
            artifact_dir=args.artifact_dir,
            bot=config.bot,
            tensorzero=tensorzero,
            recorder=recorder,
            manifest_path=args.manifest_path,
        )
    if outcome.cancelled:
        print(f"Skipping artifact application: {outcome.drift_reason}")
    elif outcome.followup_pr is not None:
        print(f"Created follow-up PR #{outcome.followup_pr.number}: {outcome.followup_pr.html_url}")


def _cmd_pr_feedback(config: AppConfig, args: argparse.Namespace) -> None:
    tensorzero_config = config.require_tensorzero()
    if tensorzero_config.pr_merged_metric_name is None:
        raise ConfigError("tensorzero.pr_merged_metric_name is required for pr-feedback")
    clickhouse_config = config.require_clickhouse()
    event = parse_closed_pull_request_event(load_event_payload(args.event_path))
    with (
        TensorZeroClient(tensorzero_config) as tensorzero,
        InferenceRecorder(clickhouse_config) as recorder,
    ):
        run_pr_feedback(
            event,
            recorder=recorder,
            tensorzero=tensorzero,
            pr_merged_metric_name=tensorzero_config.pr_merged_metric_name,
        )


def _cmd_close_followups(config: AppConfig, args: argparse.Namespace) -> None:
    event = parse_closed_pull_request_event(load_event_payload(args.event_path))
    if event.state != "closed":
        log_event(LOGGER, "close_followups_skipped", reason="pull_request_not_closed")
        return
    if not event.head_ref:
        log_warning(LOGGER, "close_followups_skipped", reason="missing_head_ref")
        return
    repository = _require_repository(event.repository)
    token = _resolve_token(config, args)
    github = GitHubGateway(repository.owner, repository.name, token=token)
    result = close_followup_prs_for_parent(
        github,
        parent_number=event.number,
        parent_head_ref=event.head_ref,
        parent_merged=event.merged,
        namespace=config.bot.branch_namespace,
    )
    print(f"Closed {result.closed} follow-up PR(s)")
    if result.errors:
        log_warning(
            LOGGER,
            "close_followups_partial_failure",
            parent_pr_number=event.number,
            errors="; ".join(result.errors),
        )
