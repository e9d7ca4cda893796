from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import tempfile
from typing import cast

from cibot.config import AgentConfig
from cibot.models import AGENT_DECISIONS, AgentCompletionOutput, AgentDecision
from cibot.observability import log_event, log_warning
from cibot.shell import CommandTimeoutError, run_capture


LOGGER = logging.getLogger("cibot.agent_driver")

EPISODE_ID_PATH_ENV = "CIBOT_EPISODE_ID_PATH"
SUBMIT_SENTINEL = "COMPLETE_TASK_AND_SUBMIT_FINAL_OUTPUT"
DEFAULT_REASONING = "Agent completed task without providing reasoning"
_DECISION_PREFIX = "DECISION:"
_REASONING_PREFIX = "REASONING:"


class AgentError(RuntimeError):
    pass


class AgentSpawnError(AgentError):
    pass


class AgentTimeoutError(AgentError):
    pass


class AgentTrajectoryError(AgentError):
    def __init__(self, message: str, *, episode_id: str | None = None) -> None:
        super().__init__(message)
        self.episode_id = episode_id


@dataclass(frozen=True)
class AgentTrajectory:
    exit_status: str
    submission: str
    instance_cost: float | None
    api_calls: int | None
    mini_version: str | None
    episode_id: str | None
    message_count: int
    raw: dict[str, object]

    def to_json(self) -> str:
        return json.dumps(self.raw, indent=2)


@dataclass(frozen=True)
class AgentRunResult:
    completion: AgentCompletionOutput
    trajectory: AgentTrajectory
    stdout: str
    stderr: str
    exit_code: int

    @property
    def episode_id(self) -> str | None:
        return self.trajectory.episode_id


def parse_agent_completion(text: str) -> AgentCompletionOutput:
    """Parse the agent's free-text submission into a decision and reasoning.

    Never raises. Unknown decision values are ignored and unprefixed lines are
    folded into the reasoning. A REASONING line discards any text collected
    before it. A missing decision falls back to PULL_REQUEST so a human
    reviews the change.
    """
    decision: AgentDecision | None = None
    reasoning_parts: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith(SUBMIT_SENTINEL):
            continue
        if line.startswith(_DECISION_PREFIX):
            value = line[len(_DECISION_PREFIX) :].strip()
            if value in AGENT_DECISIONS:
                decision = cast(AgentDecision, value)
            continue
        if line.startswith(_REASONING_PREFIX):
            value = line[len(_REASONING_PREFIX) :].strip()
            reasoning_parts = [value] if value else []
            continue
        reasoning_parts.append(line)

    reasoning = " ".join(reasoning_parts).strip()
    return AgentCompletionOutput(
        decision=decision or "PULL_REQUEST",
        reasoning=reasoning or DEFAULT_REASONING,
    )


def parse_trajectory(payload: object, *, episode_id: str | None = None) -> AgentTrajectory:
    if not isinstance(payload, dict):
        raise AgentTrajectoryError("Trajectory must be a JSON object", episode_id=episode_id)
    raw = cast(dict[str, object], payload)
    info = raw.get("info")
    if not isinstance(info, dict):
        raise AgentTrajectoryError("Trajectory is missing its info block", episode_id=episode_id)
    info_obj = cast(dict[str, object], info)
    stats = info_obj.get("model_stats")
    stats_obj = cast(dict[str, object], stats) if isinstance(stats, dict) else {}
    messages = raw.get("messages")

    recorded_episode_id = info_obj.get("episode_id")
    return AgentTrajectory(
        exit_status=_as_str(info_obj.get("exit_status")),
        submission=_as_str(info_obj.get("submission")),
        instance_cost=_as_optional_float(stats_obj.get("instance_cost")),
        api_calls=_as_optional_int(stats_obj.get("api_calls")),
        mini_version=_as_str(info_obj.get("mini_version")) or None,
        episode_id=(
            recorded_episode_id
            if isinstance(recorded_episode_id, str) and recorded_episode_id
            else episode_id
        ),
        message_count=len(messages) if isinstance(messages, list) else 0,
        raw=raw,
    )


class MiniSweAgentDriver:
    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    def build_command(
        self,
        *,
        task: str,
        trajectory_path: Path,
        cost_limit: float,
        model: str | None,
        pr_number: int | None,
    ) -> list[str]:
        cmd = [
            *self._config.command,
            "-t",
            task,
            "-o",
            str(trajectory_path),
            "-l",
            _format_number(cost_limit),
            "--exit-immediately",
            "-y",
        ]
        if model:
            cmd.extend(["-m", model])
        if pr_number is not None:
            cmd.extend(["--tag", f"pr_number={pr_number}"])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
        return cmd

    def run(
        self,
        *,
        task: str,
        cwd: Path,
        cost_limit: float | None = None,
        timeout_seconds: float | None = None,
        model: str | None = None,
        pr_number: int | None = None,
    ) -> AgentRunResult:
        effective_cost = cost_limit if cost_limit is not None else self._config.cost_limit
        effective_timeout = (
            timeout_seconds if timeout_seconds is not None else self._config.timeout_seconds
        )
        effective_model = model or self._config.model

        # The trajectory lives outside the working copy so it never lands in the diff.
        with tempfile.TemporaryDirectory(prefix="cibot_agent_") as tmp:
            tmp_path = Path(tmp)
            trajectory_path = tmp_path / "trajectory.json"
            episode_id_path = tmp_path / "episode_id"
            cmd = self.build_command(
                task=task,
                trajectory_path=trajectory_path,
                cost_limit=effective_cost,
                model=effective_model,
                pr_number=pr_number,
            )
            env = {"PYTHONUNBUFFERED": "1", EPISODE_ID_PATH_ENV: str(episode_id_path)}
            if self._config.tensorzero_config_path is not None:
                env["TENSORZERO_CONFIG_PATH"] = str(self._config.tensorzero_config_path)

            log_event(
                LOGGER,
                "agent_invocation_started",
                cwd=str(cwd),
                cost_limit=effective_cost,
                timeout_seconds=effective_timeout,
                model=effective_model,
                pr_number=pr_number,
            )
            try:
                result = run_capture(cmd, cwd=cwd, env=env, timeout=effective_timeout)
            except CommandTimeoutError as exc:
                log_warning(
                    LOGGER,
                    "agent_invocation_timed_out",
                    timeout_seconds=effective_timeout,
                )
                raise AgentTimeoutError(
                    f"mini-swe-agent timed out after {_format_number(effective_timeout)} seconds"
                ) from exc
            except OSError as exc:
                raise AgentSpawnError(f"Failed to spawn mini-swe-agent: {exc}") from exc

            if result.exit_code != 0:
                log_warning(
                    LOGGER,
                    "agent_nonzero_exit",
                    exit_code=result.exit_code,
                    stderr=result.stderr[-500:],
                )
            side_channel_episode_id = _read_episode_id(episode_id_path)
            trajectory = _load_trajectory(trajectory_path, episode_id=side_channel_episode_id)

        completion = parse_agent_completion(trajectory.submission)
        log_event(
            LOGGER,
            "agent_invocation_finished",
            exit_code=result.exit_code,
            exit_status=trajectory.exit_status,
            decision=completion.decision,
            instance_cost=trajectory.instance_cost,
            api_calls=trajectory.api_calls,
            episode_id=trajectory.episode_id,
        )
        return AgentRunResult(
            completion=completion,
            trajectory=trajectory,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )


def _load_trajectory(path: Path, *, episode_id: str | None) -> AgentTrajectory:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise AgentTrajectoryError(
            f"Failed to read trajectory file: {exc}", episode_id=episode_id
        ) from exc
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise AgentTrajectoryError(
            f"Failed to parse trajectory file: {exc}", episode_id=episode_id
        ) from exc
    return parse_trajectory(payload, episode_id=episode_id)


def _read_episode_id(path: Path) -> str | None:
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def _format_number(value: float) -> str:
    return f"{value:g}"


def _as_str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
