"""Schema-versioned manifest that hands a generated patch from the untrusted phase to the privileged one.

The generation phase writes ``manifest.json`` plus sibling artifact files into
one directory. The apply phase treats every byte of that directory as hostile:
the manifest is type-checked field by field, artifact paths are confined to the
directory, and artifact sizes are capped before anything reaches GitHub.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import logging
import math
from pathlib import Path
import posixpath
from typing import cast

from cibot.events import WorkflowRunEvent
from cibot.git_ops import normalize_diff
from cibot.models import PullRequestSnapshot
from cibot.observability import log_event


LOGGER = logging.getLogger("cibot.manifest")

PATCH_MANIFEST_SCHEMA_VERSION = 1
ARTIFACT_VERSION = "1.0.0"
MANIFEST_FILENAME = "manifest.json"
DEFAULT_PATCH_PATH = "generated-patch.diff"
DEFAULT_COMMENT_PATH = "generated-comment.md"
DEFAULT_COMMANDS_PATH = "commands.json"

MAX_DIFF_CHAR_LENGTH = 500_000
MAX_COMMENT_CHAR_LENGTH = 25_000
MAX_COMMAND_COUNT = 25
MAX_COMMAND_CHAR_LENGTH = 2_000


class ManifestError(ValueError):
    pass


class ArtifactPathError(ManifestError):
    pass


class ArtifactTooLargeError(ManifestError):
    pass


@dataclass(frozen=True)
class ManifestWorkflowRun:
    id: int
    attempt: int | None = None
    name: str | None = None
    head_branch: str | None = None


@dataclass(frozen=True)
class ManifestRepository:
    owner: str
    name: str


@dataclass(frozen=True)
class ManifestAuthor:
    login: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class ManifestPullRequest:
    number: int
    head_sha: str
    head_ref: str
    base_sha: str
    base_ref: str
    html_url: str | None = None
    head_repository_id: int | None = None
    base_repository_id: int | None = None
    author: ManifestAuthor | None = None


@dataclass(frozen=True)
class ManifestOutputs:
    generated_patch_path: str | None = None
    generated_comment_path: str | None = None
    commands_path: str | None = None
    llm_response_path: str | None = None
    failure_logs_path: str | None = None
    workflow_jobs_path: str | None = None


@dataclass(frozen=True)
class ManifestLlm:
    inference_id: str
    response_id: str
    episode_id: str | None = None


@dataclass(frozen=True)
class ManifestTensorZero:
    diff_patched_metric_name: str


@dataclass(frozen=True)
class ManifestMetadata:
    has_diff: bool = False
    has_comment: bool = False
    has_commands: bool = False


@dataclass(frozen=True)
class PullRequestPatchManifest:
    artifact_version: str
    created_at: str
    workflow_run: ManifestWorkflowRun
    repository: ManifestRepository
    pull_request: ManifestPullRequest
    llm: ManifestLlm
    tensorzero: ManifestTensorZero
    outputs: ManifestOutputs = field(default_factory=ManifestOutputs)
    metadata: ManifestMetadata = field(default_factory=ManifestMetadata)
    schema_version: int = PATCH_MANIFEST_SCHEMA_VERSION

    def to_json_dict(self) -> dict[str, object]:
        pr = self.pull_request
        pull_request: dict[str, object] = {
            "number": pr.number,
            "headSha": pr.head_sha,
            "headRef": pr.head_ref,
            "baseSha": pr.base_sha,
            "baseRef": pr.base_ref,
        }
        _put_optional(pull_request, "htmlUrl", pr.html_url)
        _put_optional(pull_request, "headRepositoryId", pr.head_repository_id)
        _put_optional(pull_request, "baseRepositoryId", pr.base_repository_id)
        if pr.author is not None:
            author: dict[str, object] = {}
            _put_optional(author, "login", pr.author.login)
            _put_optional(author, "id", pr.author.id)
            pull_request["author"] = author

        workflow_run: dict[str, object] = {"id": self.workflow_run.id}
        _put_optional(workflow_run, "attempt", self.workflow_run.attempt)
        _put_optional(workflow_run, "name", self.workflow_run.name)
        _put_optional(workflow_run, "headBranch", self.workflow_run.head_branch)

        outputs: dict[str, object] = {}
        for key, attr in _OUTPUT_KEYS:
            _put_optional(outputs, key, getattr(self.outputs, attr))

        llm: dict[str, object] = {
            "inferenceId": self.llm.inference_id,
            "responseId": self.llm.response_id,
        }
        _put_optional(llm, "episodeId", self.llm.episode_id)

        return {
            "schemaVersion": self.schema_version,
            "artifactVersion": self.artifact_version,
            "createdAt": self.created_at,
            "workflowRun": workflow_run,
            "repository": {"owner": self.repository.owner, "name": self.repository.name},
            "pullRequest": pull_request,
            "outputs": outputs,
            "llm": llm,
            "tensorZero": {
                "diffPatchedMetricName": self.tensorzero.diff_patched_metric_name,
            },
            "metadata": {
                "hasDiff": self.metadata.has_diff,
                "hasComment": self.metadata.has_comment,
                "hasCommands": self.metadata.has_commands,
            },
        }


_OUTPUT_KEYS: tuple[tuple[str, str], ...] = (
    ("generatedPatchPath", "generated_patch_path"),
    ("generatedCommentPath", "generated_comment_path"),
    ("commandsPath", "commands_path"),
    ("llmResponsePath", "llm_response_path"),
    ("failureLogsPath", "failure_logs_path"),
    ("workflowJobsPath", "workflow_jobs_path"),
)


def write_patch_artifacts(
    output_dir: Path,
    manifest: PullRequestPatchManifest,
    *,
    diff: str | None = None,
    comment: str | None = None,
    commands: tuple[str, ...] = (),
) -> PullRequestPatchManifest:
    """Write the non-empty artifacts, then ``manifest.json`` describing them.

    Returns the manifest as written, with `outputs` and `metadata` filled in.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs = manifest.outputs

    if diff:
        patch_path = outputs.generated_patch_path or DEFAULT_PATCH_PATH
        _write_text(output_dir, patch_path, diff if diff.endswith("\n") else f"{diff}\n")
        outputs = replace(outputs, generated_patch_path=patch_path)
    if comment:
        comment_path = outputs.generated_comment_path or DEFAULT_COMMENT_PATH
        _write_text(output_dir, comment_path, comment)
        outputs = replace(outputs, generated_comment_path=comment_path)
    if commands:
        commands_path = outputs.commands_path or DEFAULT_COMMANDS_PATH
        _write_text(output_dir, commands_path, json.dumps(list(commands), indent=2))
        outputs = replace(outputs, commands_path=commands_path)

    written = replace(
        manifest,
        schema_version=PATCH_MANIFEST_SCHEMA_VERSION,
        outputs=outputs,
        metadata=ManifestMetadata(
            has_diff=bool(diff),
            has_comment=bool(comment),
            has_commands=bool(commands),
        ),
    )
    _write_text(output_dir, MANIFEST_FILENAME, json.dumps(written.to_json_dict(), indent=2))
    log_event(
        LOGGER,
        "manifest_written",
        output_dir=str(output_dir),
        has_diff=written.metadata.has_diff,
        has_comment=written.metadata.has_comment,
        has_commands=written.metadata.has_commands,
    )
    return written


def resolve_artifact_path(base_dir: Path, relative_path: str) -> Path:
    normalized = posixpath.normpath(relative_path)
    if (
        normalized == ".."
        or normalized.startswith("../")
        or posixpath.isabs(normalized)
        or Path(normalized).is_absolute()
    ):
        raise ArtifactPathError(f"Artifact path escapes base directory: {relative_path}")
    base = base_dir.resolve()
    resolved = (base / normalized).resolve()
    if resolved != base and base not in resolved.parents:
        raise ArtifactPathError(f"Artifact path escapes base directory: {relative_path}")
    return resolved


def load_manifest(
    artifact_dir: Path, manifest_path: str = MANIFEST_FILENAME
) -> PullRequestPatchManifest:
    if not artifact_dir.is_dir():
        raise ManifestError(f"Artifact directory does not exist: {artifact_dir}")
    path = resolve_artifact_path(artifact_dir, manifest_path)
    if not path.is_file():
        raise ManifestError(f"Manifest file not found at {path}")
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Failed to read manifest: {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Failed to parse manifest JSON: {exc}") from exc
    manifest = assert_pull_request_patch_manifest(payload)
    log_event(
        LOGGER,
        "manifest_loaded",
        path=str(path),
        workflow_run_id=manifest.workflow_run.id,
        pr_number=manifest.pull_request.number,
    )
    return manifest


def assert_pull_request_patch_manifest(value: object) -> PullRequestPatchManifest:
    """Validate decoded JSON and build the manifest, failing on the first bad field."""
    root = _require_object(value, "Manifest must be an object")
    schema_version = root.get("schemaVersion")
    if (
        isinstance(schema_version, bool)
        or not isinstance(schema_version, int)
        or schema_version != PATCH_MANIFEST_SCHEMA_VERSION
    ):
        raise ManifestError(f"Unsupported manifest schema version: {schema_version}")

    artifact_version = _require_str(root.get("artifactVersion"), "artifactVersion")
    created_at = _require_str(root.get("createdAt"), "createdAt")

    run_obj = _require_object(
        root.get("workflowRun"), "Manifest workflowRun must be an object"
    )
    workflow_run = ManifestWorkflowRun(
        id=_require_number(run_obj.get("id"), "workflowRun.id"),
        attempt=_optional_number(run_obj.get("attempt"), "workflowRun.attempt"),
        name=_optional_str(run_obj.get("name"), "workflowRun.name"),
        head_branch=_optional_str(run_obj.get("headBranch"), "workflowRun.headBranch"),
    )

    repo_obj = _require_object(root.get("repository"), "Manifest repository must be an object")
    repository = ManifestRepository(
        owner=_require_str(repo_obj.get("owner"), "repository.owner"),
        name=_require_str(repo_obj.get("name"), "repository.name"),
    )

    pr_obj = _require_object(root.get("pullRequest"), "Manifest pullRequest must be an object")
    author: ManifestAuthor | None = None
    if "author" in pr_obj and pr_obj["author"] is not None:
        author_obj = _require_object(
            pr_obj["author"], "Manifest pullRequest.author must be an object when provided"
        )
        author = ManifestAuthor(
            login=_optional_str(author_obj.get("login"), "pullRequest.author.login"),
            id=_optional_number(author_obj.get("id"), "pullRequest.author.id"),
        )
    pull_request = ManifestPullRequest(
        number=_require_number(pr_obj.get("number"), "pullRequest.number"),
        head_sha=_require_str(pr_obj.get("headSha"), "pullRequest.headSha"),
        head_ref=_require_str(pr_obj.get("headRef"), "pullRequest.headRef"),
        base_sha=_require_str(pr_obj.get("baseSha"), "pullRequest.baseSha"),
        base_ref=_require_str(pr_obj.get("baseRef"), "pullRequest.baseRef"),
        html_url=_optional_str(pr_obj.get("htmlUrl"), "pullRequest.htmlUrl"),
        head_repository_id=_optional_number(
            pr_obj.get("headRepositoryId"), "pullRequest.headRepositoryId"
        ),
        base_repository_id=_optional_number(
            pr_obj.get("baseRepositoryId"), "pullRequest.baseRepositoryId"
        ),
        author=author,
    )

    outputs_obj = _require_object(root.get("outputs"), "Manifest outputs must be an object")
    outputs = ManifestOutputs(
        **{
            attr: _optional_str(outputs_obj.get(key), f"outputs.{key}")
            for key, attr in _OUTPUT_KEYS
        }
    )

    llm_obj = _require_object(root.get("llm"), "Manifest llm must be an object")
    llm = ManifestLlm(
        inference_id=_require_str(llm_obj.get("inferenceId"), "llm.inferenceId"),
        response_id=_require_str(llm_obj.get("responseId"), "llm.responseId"),
        episode_id=_optional_str(llm_obj.get("episodeId"), "llm.episodeId"),
    )

    tz_obj = _require_object(root.get("tensorZero"), "Manifest tensorZero must be an object")
    tensorzero = ManifestTensorZero(
        diff_patched_metric_name=_require_str(
            tz_obj.get("diffPatchedMetricName"), "tensorZero.diffPatchedMetricName"
        ),
    )

    meta_obj = _require_object(root.get("metadata"), "Manifest metadata must be an object")
    metadata = ManifestMetadata(
        has_diff=_require_bool(meta_obj.get("hasDiff"), "metadata.hasDiff"),
        has_comment=_require_bool(meta_obj.get("hasComment"), "metadata.hasComment"),
        has_commands=_require_bool(meta_obj.get("hasCommands"), "metadata.hasCommands"),
    )

    return PullRequestPatchManifest(
        schema_version=PATCH_MANIFEST_SCHEMA_VERSION,
        artifact_version=artifact_version,
        created_at=created_at,
        workflow_run=workflow_run,
        repository=repository,
        pull_request=pull_request,
        outputs=outputs,
        llm=llm,
        tensorzero=tensorzero,
        metadata=metadata,
    )


def ensure_manifest_matches_event(
    manifest: PullRequestPatchManifest,
    event: WorkflowRunEvent,
    *,
    owner: str,
    repo: str,
) -> None:
    if manifest.workflow_run.id != event.run_id:
        raise ManifestError(
            f"Manifest workflow run {manifest.workflow_run.id} does not match "
            f"triggering workflow run {event.run_id}."
        )
    upstream = event.pull_requests[0].number if event.pull_requests else None
    if upstream is None:
        raise ManifestError("Upstream workflow run did not reference a pull request.")
    if manifest.pull_request.number != upstream:
        raise ManifestError(
            f"Manifest PR #{manifest.pull_request.number} does not match upstream PR #{upstream}."
        )
    if manifest.repository.owner != owner or manifest.repository.name != repo:
        raise ManifestError(
            f"Manifest repository {manifest.repository.owner}/{manifest.repository.name} "
            f"does not match workflow repository {owner}/{repo}."
        )


def detect_pull_request_drift(
    manifest: PullRequestPatchManifest, live: PullRequestSnapshot
) -> str | None:
    """Describe how the live PR moved since the manifest was generated, or None."""
    if live.head_sha != manifest.pull_request.head_sha:
        return (
            "Pull request head SHA has changed "
            f"(was {manifest.pull_request.head_sha}, now {live.head_sha})."
        )
    if live.base_sha != manifest.pull_request.base_sha:
        return (
            "Pull request base SHA has changed "
            f"(was {manifest.pull_request.base_sha}, now {live.base_sha})."
        )
    return None


def read_patch(path: Path) -> str:
    diff = normalize_diff(_read_optional_text(path) or "")
    if len(diff) > MAX_DIFF_CHAR_LENGTH:
        raise ArtifactTooLargeError(
            f"Generated diff exceeds safe length of {MAX_DIFF_CHAR_LENGTH} characters."
        )
    return diff


def read_comment(path: Path) -> str:
    comment = (_read_optional_text(path) or "").strip()
    if len(comment) > MAX_COMMENT_CHAR_LENGTH:
        raise ArtifactTooLargeError(
            f"Generated comment exceeds safe length of {MAX_COMMENT_CHAR_LENGTH} characters."
        )
    return comment


def read_commands(path: Path | None) -> tuple[str, ...]:
    if path is None:
        return ()
    raw = _read_optional_text(path)
    if not raw:
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Failed to parse commands JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ManifestError("Commands JSON must be an array of strings.")
    if len(parsed) > MAX_COMMAND_COUNT:
        raise ArtifactTooLargeError(
            f"Commands array exceeds maximum of {MAX_COMMAND_COUNT} entries."
        )
    commands: list[str] = []
    for entry in parsed:
        if not isinstance(entry, str):
            raise ManifestError("Commands JSON must contain only strings.")
        trimmed = entry.strip()
        if not trimmed:
            continue
        if len(trimmed) > MAX_COMMAND_CHAR_LENGTH:
            raise ArtifactTooLargeError(
                f"Command exceeds maximum length of {MAX_COMMAND_CHAR_LENGTH} characters."
            )
        commands.append(trimmed)
    return tuple(commands)


def _write_text(base_dir: Path, relative_path: str, content: str) -> Path:
    path = resolve_artifact_path(base_dir, relative_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    log_event(LOGGER, "artifact_written", path=str(path), chars=len(content))
    return path


def _read_optional_text(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


def _put_optional(target: dict[str, object], key: str, value: object) -> None:
    if value is not None:
        target[key] = value


def _require_object(value: object, message: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ManifestError(message)
    return cast(dict[str, object], value)


def _require_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ManifestError(f"Manifest {field_name} must be a string")
    return value


def _optional_str(value: object, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ManifestError(f"Manifest {field_name} must be a string when provided")
    return value


def _as_number(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None


def _require_number(value: object, field_name: str) -> int:
    number = _as_number(value)
    if number is None:
        raise ManifestError(f"Manifest {field_name} must be a number")
    return number


def _optional_number(value: object, field_name: str) -> int | None:
    if value is None:
        return None
    number = _as_number(value)
    if number is None:
        raise ManifestError(f"Manifest {field_name} must be a number when provided")
    return number


def _require_bool(value: object, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ManifestError(f"Manifest {field_name} must be a boolean")
    return value
