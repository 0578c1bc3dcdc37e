"""Checkpoint persistence for resumable enrichment runs.

Checkpoints are immutable JSON snapshots, one file per configuration hash,
replaced atomically (temp file + rename) on every write. Resuming is only
allowed when the checkpoint was produced under the same configuration.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from pydantic import ValidationError

from ..output.serialization import (
    atomic_write_bytes,
    json_dumps,
    json_dumps_canonical,
    json_loads,
)
from ..types.checkpoint import Checkpoint, CheckpointStats, FailedItem
from ..types.errors import CheckpointLoadError, CheckpointWriteError, ConfigMismatchError

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint-"
CHECKPOINT_SUFFIX = ".json"


@dataclass(frozen=True)
class ResumeState:
    """Where a run starts, derived from an optional checkpoint."""

    is_resuming: bool
    last_index: int
    config_hash: str
    checkpoint: Optional[Checkpoint] = None
    failed_items: list[FailedItem] = field(default_factory=list)

    @property
    def start_index(self) -> int:
        return self.last_index + 1


def compute_config_hash(config: Mapping[str, Any]) -> str:
    """Deterministic, key-order-independent SHA-256 over the config."""
    return hashlib.sha256(json_dumps_canonical(dict(config))).hexdigest()


def verify_config_hash(checkpoint_hash: str, current_hash: str) -> bool:
    return checkpoint_hash == current_hash


def checkpoint_path(checkpoint_dir: Path, config_hash: str) -> Path:
    """Checkpoint file for a configuration; distinct hashes never collide."""
    return Path(checkpoint_dir) / f"{CHECKPOINT_PREFIX}{config_hash}{CHECKPOINT_SUFFIX}"


def should_write_checkpoint(item_index: int, checkpoint_interval: int = 100) -> bool:
    return item_index > 0 and item_index % checkpoint_interval == 0


def create_checkpoint(
    last_processed_index: int,
    total_processed: int,
    total_failed: int,
    stats: CheckpointStats,
    failed_items: Sequence[FailedItem],
    config_hash: str,
    completed: bool = False,
) -> Checkpoint:
    return Checkpoint(
        config_hash=config_hash,
        last_processed_index=last_processed_index,
        total_processed=total_processed,
        total_failed=total_failed,
        stats=stats.model_copy(deep=True),
        failed_items=[item.model_copy() for item in failed_items],
        completed=completed,
    )


def get_resume_index(checkpoint: Checkpoint) -> int:
    return checkpoint.last_processed_index + 1


def save_checkpoint(checkpoint: Checkpoint, path: Path) -> None:
    """Atomically persist a checkpoint.

    Raises:
        CheckpointWriteError: If the snapshot could not be written.
    """
    data = json_dumps(checkpoint.model_dump(mode="json", by_alias=True))
    try:
        atomic_write_bytes(Path(path), data)
    except OSError as e:
        raise CheckpointWriteError(f"Failed to write checkpoint {path}: {e}") from e
    logger.debug(f"Saved checkpoint {path} (lastProcessedIndex={checkpoint.last_processed_index})")


def load_checkpoint(path: Path) -> Optional[Checkpoint]:
    """Load a checkpoint, or None if the file does not exist.

    Raises:
        CheckpointLoadError: If the file exists but cannot be read or parsed.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        raw = path.read_bytes()
        return Checkpoint.model_validate(json_loads(raw))
    except (OSError, ValueError, ValidationError) as e:
        raise CheckpointLoadError(f"Failed to load checkpoint {path}: {e}") from e


def initialize_state(checkpoint: Optional[Checkpoint], current_config_hash: str) -> ResumeState:
    """Derive the resume state.

    Raises:
        ConfigMismatchError: If the checkpoint was written under another config.
    """
    if checkpoint is None:
        return ResumeState(is_resuming=False, last_index=-1, config_hash=current_config_hash)

    if not verify_config_hash(checkpoint.config_hash, current_config_hash):
        raise ConfigMismatchError(checkpoint.config_hash, current_config_hash)

    return ResumeState(
        is_resuming=True,
        last_index=get_resume_index(checkpoint) - 1,
        config_hash=checkpoint.config_hash,
        checkpoint=checkpoint,
        failed_items=list(checkpoint.failed_items),
    )


def list_checkpoints(checkpoint_dir: Path) -> list[Path]:
    checkpoint_dir = Path(checkpoint_dir)
    if not checkpoint_dir.is_dir():
        return []
    return sorted(checkpoint_dir.glob(f"{CHECKPOINT_PREFIX}*{CHECKPOINT_SUFFIX}"))


def delete_checkpoint(path: Path) -> bool:
    """Delete a checkpoint file; returns whether one existed."""
    path = Path(path)
    if not path.exists():
        return False
    path.unlink()
    logger.info(f"Deleted checkpoint {path}")
    return True


class CheckpointManager:
    """Checkpoint store bound to one directory and configuration hash.

    Tracks the last persisted index so interval snapshots only ever move
    forward; the end-of-run snapshot may repeat the last index.
    """

    def __init__(self, checkpoint_dir: Path, config_hash: str):
        self._dir = Path(checkpoint_dir)
        self._config_hash = config_hash
        self._path = checkpoint_path(self._dir, config_hash)
        self._last_saved_index: Optional[int] = None
        self._writes = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @property
    def writes(self) -> int:
        """Number of checkpoints written by this manager."""
        return self._writes

    @property
    def last_saved_index(self) -> Optional[int]:
        return self._last_saved_index

    def load(self) -> Optional[Checkpoint]:
        return load_checkpoint(self._path)

    def initialize(self, resume: bool) -> ResumeState:
        """Resume from the stored checkpoint, or start fresh if not resuming."""
        checkpoint = self.load() if resume else None
        if resume and checkpoint is None:
            logger.warning("No checkpoint found, starting from beginning")
        state = initialize_state(checkpoint, self._config_hash)
        if state.is_resuming:
            self._last_saved_index = state.last_index
            logger.info(f"Resuming from checkpoint at index {state.start_index}")
        return state

    def save(self, checkpoint: Checkpoint) -> None:
        if checkpoint.config_hash != self._config_hash:
            raise ValueError("checkpoint belongs to a different configuration")

        previous = self._last_saved_index
        if previous is not None:
            regressed = checkpoint.last_processed_index < previous
            repeated = checkpoint.last_processed_index == previous and not checkpoint.completed
            if regressed or repeated:
                raise ValueError(
                    f"lastProcessedIndex must increase: {checkpoint.last_processed_index} "
                    f"after {previous}"
                )

        save_checkpoint(checkpoint, self._path)
        self._last_saved_index = checkpoint.last_processed_index
        self._writes += 1

    def delete(self) -> bool:
        return delete_checkpoint(self._path)
