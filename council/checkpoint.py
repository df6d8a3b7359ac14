"""Stage-level checkpoints so an interrupted run can resume.

A checkpoint is keyed by the exact question text. No file locking is done:
two runs sharing one checkpoint path can overwrite each other.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from council.models import CheckpointData

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
DEFAULT_CHECKPOINT_NAME = "council-checkpoint"


@dataclass(frozen=True)
class CheckpointOptions:
    directory: Path
    name: str = DEFAULT_CHECKPOINT_NAME

    @property
    def path(self) -> Path:
        return Path(self.directory) / f"{self.name}.json"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_text_atomic(path: Path, text: str) -> None:
    """Write to a temp file in the same directory, fsync, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def save_checkpoint(data: CheckpointData, options: CheckpointOptions) -> Path:
    """Overwrite the checkpoint file with ``data``. Creates the directory."""
    if not data.timestamp:
        data.timestamp = utc_now_iso()
    path = options.path
    _write_text_atomic(path, json.dumps(data.to_dict(), indent=2, ensure_ascii=False))
    logger.info("Checkpoint saved after %s: %s", data.completed_stage, path)
    return path


def load_checkpoint(question: str, options: CheckpointOptions) -> CheckpointData | None:
    """Checkpoint for ``question``, or None.

    None (with a warning) also covers unreadable files, unknown versions and
    checkpoints written for a different question.
    """
    path = options.path
    if not path.exists():
        return None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load checkpoint %s: %s", path, exc)
        return None

    if not isinstance(raw, dict) or raw.get("version") != CHECKPOINT_VERSION:
        version = raw.get("version") if isinstance(raw, dict) else None
        logger.warning("Checkpoint version mismatch (%r), ignoring checkpoint", version)
        return None

    if raw.get("question") != question:
        logger.warning("Checkpoint question doesn't match, ignoring checkpoint")
        return None

    try:
        return CheckpointData.from_dict(raw)
    except (KeyError, TypeError, AttributeError) as exc:
        logger.warning("Malformed checkpoint %s, ignoring: %s", path, exc)
        return None


def clear_checkpoint(options: CheckpointOptions) -> None:
    """Delete the checkpoint file. Missing files are fine."""
    path = options.path
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove checkpoint %s: %s", path, exc)
        return
    logger.info("Checkpoint cleared: %s", path)


class CheckpointStore:
    """The three checkpoint operations bound to one location."""

    def __init__(self, options: CheckpointOptions) -> None:
        self.options = options

    def save(self, data: CheckpointData) -> Path:
        return save_checkpoint(data, self.options)

    def load(self, question: str) -> CheckpointData | None:
        return load_checkpoint(question, self.options)

    def clear(self) -> None:
        clear_checkpoint(self.options)
