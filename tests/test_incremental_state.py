"""Tests for incremental enrichment state."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import orjson
import pytest

from batch_enrich.checkpoint import incremental_state as inc
from batch_enrich.checkpoint.incremental_state import (
    create_incremental_state,
    detect_new_items,
    is_state_outdated,
    load_incremental_state,
    reset_incremental_state,
    save_incremental_state,
    update_state_with_enriched_guids,
)
from batch_enrich.types.errors import CheckpointWriteError
from batch_enrich.types.incremental import IncrementalState, RunStats


class TestPersistence:
    """Saving and loading the state file."""

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "state.json"
        state = create_incremental_state(["a", "b"], config_hash="c" * 64)

        save_incremental_state(state, path)
        loaded = load_incremental_state(path)

        assert loaded.enriched_guids == ["a", "b"]
        assert loaded.total_items == 2
        assert loaded.config_hash == "c" * 64

        data = orjson.loads(path.read_bytes())
        assert data["version"] == "1.0"
        assert data["enrichedGuids"] == ["a", "b"]
        assert "lastEnrichedAt" in data
        assert list(tmp_path.iterdir()) == [path]

    def test_missing_file(self, tmp_path):
        assert load_incremental_state(tmp_path / "absent.json") is None

    @pytest.mark.parametrize(
        "content",
        [
            b"{not json",
            b"[1, 2]",
            b'{"version": "2.0", "enrichedGuids": []}',
            b'{"version": "1.0", "enrichedGuids": "a"}',
        ],
    )
    def test_unusable_file_is_ignored(self, tmp_path, content):
        path = tmp_path / "state.json"
        path.write_bytes(content)
        assert load_incremental_state(path) is None

    def test_write_failure_raises(self, tmp_path):
        with patch.object(inc, "atomic_write_bytes", side_effect=OSError("read-only")):
            with pytest.raises(CheckpointWriteError):
                save_incremental_state(create_incremental_state(), tmp_path / "state.json")

    def test_reset(self, tmp_path):
        path = tmp_path / "state.json"
        save_incremental_state(create_incremental_state(["a"]), path)

        assert reset_incremental_state(path) is True
        assert not path.exists()
        assert reset_incremental_state(path) is False


class TestDetection:
    """Finding items that still need enrichment."""

    def test_without_state_everything_is_new(self):
        assert detect_new_items(["a", "b"], None) == ["a", "b"]

    def test_keeps_order_of_unseen(self):
        state = create_incremental_state(["b", "d"])
        assert detect_new_items(["a", "b", "c", "d", "e"], state) == ["a", "c", "e"]

    def test_create_drops_duplicates(self):
        state = create_incremental_state(["a", "a", "b"])
        assert state.enriched_guids == ["a", "b"]
        assert state.total_items == 2


class TestUpdate:
    """Recording newly enriched items."""

    def test_appends_without_duplicates(self):
        state = create_incremental_state(["a", "b"])
        stats = RunStats(processed_count=2, failed_count=0)

        updated = update_state_with_enriched_guids(state, ["b", "c", "c"], stats)

        assert updated.enriched_guids == ["a", "b", "c"]
        assert updated.total_items == 3
        assert updated.enrichment_stats == stats
        assert updated.last_enriched_at >= state.last_enriched_at
        assert state.enriched_guids == ["a", "b"]

    def test_outdated_after_a_week(self):
        enriched_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        state = IncrementalState(last_enriched_at=enriched_at)

        assert is_state_outdated(state, now=enriched_at + timedelta(days=6)) is False
        assert is_state_outdated(state, now=enriched_at + timedelta(days=8)) is True
        assert is_state_outdated(state, days=1, now=enriched_at + timedelta(days=2)) is True
