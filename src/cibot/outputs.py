from __future__ import annotations

import logging
import os
from pathlib import Path
import uuid

from cibot.observability import log_event


LOGGER = logging.getLogger("cibot.outputs")


def write_debug_artifact(output_dir: Path | None, filename: str, content: str) -> Path | None:
    if output_dir is None:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    path.write_text(content, encoding="utf-8")
    log_event(LOGGER, "debug_artifact_written", path=str(path), chars=len(content))
    return path


def set_action_output(name: str, value: str | int | bool) -> None:
    """Append a step output to the file named by ``GITHUB_OUTPUT``; a no-op outside Actions."""
    output_path = os.environ.get("GITHUB_OUTPUT", "").strip()
    if isinstance(value, bool):
        rendered = "true" if value else "false"
    else:
        rendered = str(value)
    log_event(LOGGER, "action_output_set", name=name, value=rendered)
    if not output_path:
        return
    with Path(output_path).open("a", encoding="utf-8") as fh:
        if "\n" in rendered:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            fh.write(f"{name}<<{delimiter}\n{rendered}\n{delimiter}\n")
        else:
            fh.write(f"{name}={rendered}\n")
