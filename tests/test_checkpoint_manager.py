"""Tests for checkpoint persistence and resume state."""

import json
import os
from unittest.mock import patch

import pytest

from batch_enrich.checkpoint import checkpoint_manager as cm
from batch_enrich.checkpoint.checkpoint_manager import (
    CheckpointManager,
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
)
from batch_enrich.core.config import EnrichConfig
from batch_enrich.types.checkpoint import CheckpointStats, FailedItem
from batch_enrich.types.errors import (
    CheckpointLoadError,
    CheckpointWriteError,
    ConfigMismatchError,
)


def make_checkpoint(index: int = 4, config_hash: str = "abc123", completed: bool = False):
    return create_checkpoint(
        last_processed_index=index,
        total_processed=index,
        total_failed=1,
        stats=CheckpointStats(
            processed_count=index,
            failed_count=1,
            enrichments_by_kind={"image_analysis": index},
        ),
        failed_items=[FailedItem(index=2, guid="g-2", kind="image_analysis", error="http_404: nope")],
        config_hash=config_hash,
        completed=completed,
    )


class TestConfigHash:
    """Deterministic configuration hashing."""

    def test_same_config_same_hash(self):
        assert compute_config_hash({"a": 1, "b": True}) == compute_config_hash({"a": 1, "b": True})

    def test_key_order_does_not_matter(self):
        assert compute_config_hash({"a": 1, "b": 2}) == compute_config_hash({"b": 2, "a": 1})

    def test_any_relevant_change_changes_hash(self):
        base = EnrichConfig().hash_input()
        variants = [
            {**base, "enableVisionAnalysis": False},
            {**base, "rateLimitDelay": 500},
            {**base, "maxRetries": 5},
            {**base, "geminiModel": "gemini-2.0-flash"},
        ]
        hashes = {compute_config_hash(v) for v in variants}
        assert compute_config_hash(base) not in hashes
        assert len(hashes) == len(variants)

    def test_operational_settings_excluded(self, tmp_path):
        base = EnrichConfig()
        moved = EnrichConfig(checkpoint_dir=tmp_path, checkpoint_interval=7, max_concurrent_items=4)
        assert compute_config_hash(base.hash_input()) == compute_config_hash(moved.hash_input())

    def test_hash_is_sha256_hex(self):
        value = compute_config_hash({})
        assert len(value) == 64
        int(value, 16)


class TestCheckpointPath:
    def test_stable_and_distinct(self, tmp_path):
        assert checkpoint_path(tmp_path, "aaa") == checkpoint_path(tmp_path, "aaa")
        assert checkpoint_path(tmp_path, "aaa") != checkpoint_path(tmp_path, "bbb")
        assert checkpoint_path(tmp_path, "aaa").parent == tmp_path


class TestSaveLoad:
    """Atomic persistence."""

    def test_round_trip_uses_camel_case(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        checkpoint = make_checkpoint()
        save_checkpoint(checkpoint, path)

        raw = json.loads(path.read_text())
        assert raw["lastProcessedIndex"] == 4
        assert raw["configHash"] == "abc123"
        assert raw["stats"]["enrichmentsByKind"] == {"image_analysis": 4}
        assert raw["failedItems"][0]["guid"] == "g-2"

        loaded = load_checkpoint(path)
        assert loaded == checkpoint

    def test_load_missing_returns_none(self, tmp_path):
        assert load_checkpoint(tmp_path / "missing.json") is None

    def test_load_corrupt_raises(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text('{"lastProcessedIndex": ')
        with pytest.raises(CheckpointLoadError):
            load_checkpoint(path)

    def test_load_wrong_shape_raises(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text('{"hello": "world"}')
        with pytest.raises(CheckpointLoadError):
            load_checkpoint(path)

    def test_failed_write_keeps_previous_checkpoint(self, tmp_path):
        """A crash mid-write never corrupts the last valid checkpoint."""
        path = tmp_path / "checkpoint.json"
        save_checkpoint(make_checkpoint(index=4), path)

        with patch("batch_enrich.output.serialization.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(CheckpointWriteError):
                save_checkpoint(make_checkpoint(index=9), path)

        assert load_checkpoint(path).last_processed_index == 4
        assert os.listdir(tmp_path) == ["checkpoint.json"]

    def test_creates_missing_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "checkpoint.json"
        save_checkpoint(make_checkpoint(), path)
        assert path.exists()


class TestInitializeState:
    """Resume decisions."""

    def test_fresh_without_checkpoint(self):
        state = initialize_state(None, "current")
        assert state.is_resuming is False
        assert state.last_index == -1
        assert state.start_index == 0
        assert state.config_hash == "current"

    def test_resume_with_matching_hash(self):
        checkpoint = make_checkpoint(index=4, config_hash="same")
        state = initialize_state(checkpoint, "same")

        assert state.is_resuming is True
        assert state.last_index == 4
        assert state.start_index == get_resume_index(checkpoint) == 5
        assert state.failed_items == checkpoint.failed_items

    def test_mismatch_is_fatal(self):
        a = compute_config_hash(EnrichConfig().hash_input())
        b = compute_config_hash(EnrichConfig(enable_audio=False).hash_input())
        with pytest.raises(ConfigMismatchError) as excinfo:
            initialize_state(make_checkpoint(config_hash=a), b)
        assert excinfo.value.checkpoint_hash == a
        assert excinfo.value.current_hash == b


class TestHelpers:
    def test_should_write_checkpoint(self):
        assert not should_write_checkpoint(0, 3)
        assert should_write_checkpoint(3, 3)
        assert not should_write_checkpoint(4, 3)
        assert should_write_checkpoint(100)

    def test_create_checkpoint_copies_inputs(self):
        stats = CheckpointStats(enrichments_by_kind={"pdf_summary": 1})
        failed = [FailedItem(index=0, guid="g", kind="pdf_summary", error="x")]
        checkpoint = create_checkpoint(0, 1, 0, stats, failed, "h")

        stats.enrichments_by_kind["pdf_summary"] = 99
        failed.clear()
        assert checkpoint.stats.enrichments_by_kind == {"pdf_summary": 1}
        assert len(checkpoint.failed_items) == 1
        assert checkpoint.version == "1.0"

    def test_list_and_delete(self, tmp_path):
        for config_hash in ("one", "two"):
            save_checkpoint(make_checkpoint(config_hash=config_hash), checkpoint_path(tmp_path, config_hash))
        (tmp_path / "unrelated.json").write_text("{}")

        paths = list_checkpoints(tmp_path)
        assert [p.name for p in paths] == ["checkpoint-one.json", "checkpoint-two.json"]
        assert delete_checkpoint(paths[0]) is True
        assert delete_checkpoint(paths[0]) is False
        assert list_checkpoints(tmp_path / "nowhere") == []


class TestCheckpointManager:
    """Directory- and hash-bound store."""

    def test_initialize_ignores_file_unless_resuming(self, tmp_path):
        manager = CheckpointManager(tmp_path, "h")
        manager.save(make_checkpoint(index=4, config_hash="h"))

        assert CheckpointManager(tmp_path, "h").initialize(resume=False).start_index == 0
        assert CheckpointManager(tmp_path, "h").initialize(resume=True).start_index == 5

    def test_resume_without_file_starts_fresh(self, tmp_path):
        state = CheckpointManager(tmp_path, "h").initialize(resume=True)
        assert state.is_resuming is False

    def test_index_must_strictly_increase(self, tmp_path):
        manager = CheckpointManager(tmp_path, "h")
        manager.save(make_checkpoint(index=2, config_hash="h"))
        manager.save(make_checkpoint(index=5, config_hash="h"))

        with pytest.raises(ValueError):
            manager.save(make_checkpoint(index=5, config_hash="h"))
        with pytest.raises(ValueError):
            manager.save(make_checkpoint(index=3, config_hash="h"))

        manager.save(make_checkpoint(index=5, config_hash="h", completed=True))
        assert manager.writes == 3
        assert manager.load().completed is True

    def test_rejects_foreign_checkpoint(self, tmp_path):
        with pytest.raises(ValueError):
            CheckpointManager(tmp_path, "h").save(make_checkpoint(config_hash="other"))

    def test_write_error_surfaces(self, tmp_path):
        manager = CheckpointManager(tmp_path, "h")
        with patch.object(cm, "atomic_write_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(CheckpointWriteError):
                manager.save(make_checkpoint(config_hash="h"))
        assert manager.writes == 0
