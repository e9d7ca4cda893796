from __future__ import annotations

from dataclasses import dataclass
import json
import logging

import httpx

from cibot.config import CLICKHOUSE_TABLE_PATTERN, ClickHouseConfig
from cibot.observability import log_event, log_warning


LOGGER = logging.getLogger("cibot.analytics")


class AnalyticsError(RuntimeError):
    pass


@dataclass(frozen=True)
class InferenceToPrRecord:
    pull_request_id: int
    created_at: str
    original_pull_request_url: str
    inference_id: str | None = None
    episode_id: str | None = None


def validate_table_name(table: str) -> str:
    if not CLICKHOUSE_TABLE_PATTERN.fullmatch(table):
        raise AnalyticsError(
            "ClickHouse table name must contain only alphanumeric characters, "
            "underscores, or dots."
        )
    return table


class InferenceRecorder:
    """Append-only mapping from inferences/episodes to follow-up PRs, over ClickHouse HTTP."""

    def __init__(
        self, config: ClickHouseConfig, *, http_client: httpx.Client | None = None
    ) -> None:
        self._table = validate_table_name(config.table)
        self._config = config
        self._owns_client = http_client is None
        auth: tuple[str, str] | None = None
        if config.user is not None:
            auth = (config.user, config.password or "")
        self._http = http_client or httpx.Client(timeout=config.timeout_seconds, auth=auth)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> InferenceRecorder:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def insert(
        self,
        *,
        pull_request_id: int,
        original_pull_request_url: str,
        inference_id: str | None = None,
        episode_id: str | None = None,
    ) -> None:
        row: dict[str, object] = {
            "pull_request_id": pull_request_id,
            "original_pull_request_url": original_pull_request_url,
        }
        if inference_id is not None:
            row["inference_id"] = inference_id
        if episode_id is not None:
            row["episode_id"] = episode_id
        self._execute(
            f"INSERT INTO {self._table} FORMAT JSONEachRow",
            content=json.dumps(row) + "\n",
        )
        log_event(
            LOGGER,
            "inference_record_inserted",
            pull_request_id=pull_request_id,
            inference_id=inference_id,
            episode_id=episode_id,
        )

    def record(
        self,
        *,
        pull_request_id: int,
        original_pull_request_url: str,
        inference_id: str | None = None,
        episode_id: str | None = None,
    ) -> bool:
        """Like `insert`, but failures are logged and reported as False."""
        try:
            self.insert(
                pull_request_id=pull_request_id,
                original_pull_request_url=original_pull_request_url,
                inference_id=inference_id,
                episode_id=episode_id,
            )
        except AnalyticsError as exc:
            log_warning(
                LOGGER,
                "inference_record_failed",
                pull_request_id=pull_request_id,
                error=str(exc),
            )
            return False
        return True

    def query_by_pull_request_id(self, pull_request_id: int) -> list[InferenceToPrRecord]:
        query = (
            "SELECT inference_id, episode_id, pull_request_id, created_at, "
            f"original_pull_request_url FROM {self._table} "
            "WHERE pull_request_id = {pull_request_id:UInt64} FORMAT JSONEachRow"
        )
        body = self._execute(query, params={"param_pull_request_id": str(pull_request_id)})
        records: list[InferenceToPrRecord] = []
        for line in body.splitlines():
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                raise AnalyticsError(f"ClickHouse returned an invalid row: {exc}") from exc
            if not isinstance(row, dict):
                raise AnalyticsError("ClickHouse returned a non-object row")
            records.append(_parse_record(row))
        log_event(
            LOGGER,
            "inference_records_loaded",
            pull_request_id=pull_request_id,
            count=len(records),
        )
        return records

    def _execute(
        self,
        query: str,
        *,
        content: str | None = None,
        params: dict[str, str] | None = None,
    ) -> str:
        request_params = {"query": query, **(params or {})}
        try:
            response = self._http.post(self._config.url, params=request_params, content=content)
        except httpx.HTTPError as exc:
            raise AnalyticsError(f"ClickHouse request failed: {exc}") from exc
        if response.is_error:
            raise AnalyticsError(
                f"ClickHouse request failed with status {response.status_code}: "
                f"{response.text.strip() or '<empty>'}"
            )
        return response.text


def _parse_record(row: dict[str, object]) -> InferenceToPrRecord:
    pull_request_id = row.get("pull_request_id")
    # UInt64 columns come back as JSON strings by default.
    if isinstance(pull_request_id, str) and pull_request_id.isdigit():
        pull_request_id = int(pull_request_id)
    if isinstance(pull_request_id, bool) or not isinstance(pull_request_id, int):
        raise AnalyticsError("ClickHouse row is missing pull_request_id")
    inference_id = row.get("inference_id")
    episode_id = row.get("episode_id")
    created_at = row.get("created_at")
    url = row.get("original_pull_request_url")
    return InferenceToPrRecord(
        pull_request_id=pull_request_id,
        created_at=created_at if isinstance(created_at, str) else "",
        original_pull_request_url=url if isinstance(url, str) else "",
        inference_id=inference_id if isinstance(inference_id, str) and inference_id else None,
        episode_id=episode_id if isinstance(episode_id, str) and episode_id else None,
    )
