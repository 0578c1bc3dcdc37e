"""Checkpoint persistence for resumable runs."""

from .checkpoint_manager import (
    CheckpointManager,
    ResumeState,
    checkpoint_path,
    compute_config_hash,
    create_checkpoint,
    delete_checkpoint,
    get_resume_index,
    initialize_state,
    list_checkpoints,
    load_checkpoint,
    save_checkpoint,
    should_write_checkpoint,
    verify_config_hash,
)
from .incremental_state import (
    create_incremental_state,
    detect_new_items,
    is_state_outdated,
    load_incremental_state,
    reset_incremental_state,
    save_incremental_state,
    update_state_with_enriched_guids,
)

__all__ = [
    "CheckpointManager",
    "ResumeState",
    "checkpoint_path",
    "compute_config_hash",
    "create_checkpoint",
    "delete_checkpoint",
    "get_resume_index",
    "initialize_state",
    "list_checkpoints",
    "load_checkpoint",
    "save_checkpoint",
    "should_write_checkpoint",
    "verify_config_hash",
    # Incremental
    "create_incremental_state",
    "detect_new_items",
    "is_state_outdated",
    "load_incremental_state",
    "reset_incremental_state",
    "save_incremental_state",
    "update_state_with_enriched_guids",
]
