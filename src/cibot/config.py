from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
import tomllib
from typing import Final, cast

from cibot.shell import CommandError, run


CLICKHOUSE_TABLE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_.]+$")
_BRANCH_NAMESPACE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class GitHubConfig:
    token_env: str = "GITHUB_TOKEN"
    allow_gh_cli_token: bool = True


@dataclass(frozen=True)
class BotConfig:
    branch_namespace: str = "tensorzero"
    commit_user_name: str = "TensorZero-Experimental-CI-Bot[bot]"
    commit_user_email: str = "hello@tensorzero.com"


@dataclass(frozen=True)
class AgentConfig:
    command: tuple[str, ...] = ("mini",)
    cost_limit: float = 3.0
    timeout_minutes: int = 30
    model: str | None = None
    tensorzero_config_path: Path | None = None
    extra_args: tuple[str, ...] = ()

    @property
    def timeout_seconds(self) -> int:
        return self.timeout_minutes * 60


@dataclass(frozen=True)
class TensorZeroConfig:
    base_url: str
    diff_patched_metric_name: str | None = None
    pr_merged_metric_name: str | None = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class ClickHouseConfig:
    url: str
    table: str
    user: str | None = None
    password_env: str | None = None
    timeout_seconds: float = 30.0

    @property
    def password(self) -> str | None:
        if self.password_env is None:
            return None
        return os.environ.get(self.password_env) or None


@dataclass(frozen=True)
class ArtifactsConfig:
    output_dir: Path | None = None
    log_dir: Path | None = None


@dataclass(frozen=True)
class AppConfig:
    github: GitHubConfig = field(default_factory=GitHubConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tensorzero: TensorZeroConfig | None = None
    clickhouse: ClickHouseConfig | None = None
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)

    def require_tensorzero(self) -> TensorZeroConfig:
        if self.tensorzero is None:
            raise ConfigError("[tensorzero] is required for this command")
        return self.tensorzero

    def require_clickhouse(self) -> ClickHouseConfig:
        if self.clickhouse is None:
            raise ConfigError("[clickhouse] is required for this command")
        return self.clickhouse


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, missing_ok: bool = False) -> AppConfig:
    if missing_ok and not path.exists():
        return parse_config({})
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(data)


def parse_config(data: dict[str, object]) -> AppConfig:
    github_data = _optional_table(data, "github") or {}
    bot_data = _optional_table(data, "bot") or {}
    agent_data = _optional_table(data, "agent") or {}
    tensorzero_data = _optional_table(data, "tensorzero")
    clickhouse_data = _optional_table(data, "clickhouse")
    artifacts_data = _optional_table(data, "artifacts") or {}

    github = GitHubConfig(
        token_env=_str_with_default(github_data, "token_env", "GITHUB_TOKEN"),
        allow_gh_cli_token=_bool_with_default(github_data, "allow_gh_cli_token", True),
    )

    bot = BotConfig(
        branch_namespace=_str_with_default(bot_data, "branch_namespace", "tensorzero"),
        commit_user_name=_str_with_default(
            bot_data, "commit_user_name", "TensorZero-Experimental-CI-Bot[bot]"
        ),
        commit_user_email=_str_with_default(
            bot_data, "commit_user_email", "hello@tensorzero.com"
        ),
    )
    if not _BRANCH_NAMESPACE_PATTERN.fullmatch(bot.branch_namespace):
        raise ConfigError(
            "bot.branch_namespace must start with an alphanumeric character and contain only "
            "letters, digits, '.', '_' or '-'"
        )

    agent = AgentConfig(
        command=_tuple_of_str_with_default(agent_data, "command", ("mini",)),
        cost_limit=_float_with_default(agent_data, "cost_limit", 3.0),
        timeout_minutes=_int_with_default(agent_data, "timeout_minutes", 30),
        model=_optional_str(agent_data, "model"),
        tensorzero_config_path=_optional_path(agent_data, "tensorzero_config_path"),
        extra_args=_tuple_of_str_with_default(agent_data, "extra_args", ()),
    )
    if not agent.command:
        raise ConfigError("agent.command must contain at least one entry")
    if agent.cost_limit <= 0:
        raise ConfigError("agent.cost_limit must be > 0")
    if agent.timeout_minutes < 1:
        raise ConfigError("agent.timeout_minutes must be >= 1")

    tensorzero: TensorZeroConfig | None = None
    if tensorzero_data is not None:
        tensorzero = TensorZeroConfig(
            base_url=_require_str(tensorzero_data, "base_url").rstrip("/"),
            diff_patched_metric_name=_optional_str(tensorzero_data, "diff_patched_metric_name"),
            pr_merged_metric_name=_optional_str(tensorzero_data, "pr_merged_metric_name"),
            timeout_seconds=_float_with_default(tensorzero_data, "timeout_seconds", 30.0),
        )

    clickhouse: ClickHouseConfig | None = None
    if clickhouse_data is not None:
        table = _require_str(clickhouse_data, "table")
        if not CLICKHOUSE_TABLE_PATTERN.fullmatch(table):
            raise ConfigError(
                f"clickhouse.table {table!r} may only contain letters, digits, '_' and '.'"
            )
        clickhouse = ClickHouseConfig(
            url=_require_str(clickhouse_data, "url"),
            table=table,
            user=_optional_str(clickhouse_data, "user"),
            password_env=_optional_str(clickhouse_data, "password_env"),
            timeout_seconds=_float_with_default(clickhouse_data, "timeout_seconds", 30.0),
        )

    artifacts = ArtifactsConfig(
        output_dir=_optional_path(artifacts_data, "output_dir"),
        log_dir=_optional_path(artifacts_data, "log_dir"),
    )

    return AppConfig(
        github=github,
        bot=bot,
        agent=agent,
        tensorzero=tensorzero,
        clickhouse=clickhouse,
        artifacts=artifacts,
    )


def resolve_github_token(config: GitHubConfig, *, explicit: str | None = None) -> str:
    """Resolve the GitHub token from a CLI option, the environment, or `gh auth token`."""
    if explicit is not None and explicit.strip():
        return explicit.strip()
    from_env = os.environ.get(config.token_env, "").strip()
    if from_env:
        return from_env
    if config.allow_gh_cli_token:
        try:
            from_gh = run(["gh", "auth", "token"]).strip()
        except (CommandError, OSError):
            from_gh = ""
        if from_gh:
            return from_gh
    raise ConfigError(
        f"A GitHub token is required; set {config.token_env} or log in with `gh auth login`"
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
