"""Tests for progress tracking and ETA estimation."""

from unittest.mock import MagicMock

from batch_enrich.orchestration.progress_tracker import (
    KindProgress,
    ProgressCallbacks,
    ProgressTracker,
)


class TestDurations:
    """Rolling duration window."""

    def test_average_is_zero_before_any_completion(self, clock):
        tracker = ProgressTracker(total=10, clock=clock)
        assert tracker.average_duration() == 0.0
        assert tracker.eta_seconds() == 0

    def test_average_of_recorded_durations(self, clock):
        tracker = ProgressTracker(total=10, clock=clock)
        for i, duration in enumerate([100, 200, 300]):
            tracker.start("image_analysis", f"item-{i}")
            clock.advance(duration)
            tracker.complete("image_analysis", f"item-{i}")

        assert tracker.average_duration() == 200.0

    def test_window_keeps_last_ten(self, clock):
        tracker = ProgressTracker(total=100, clock=clock)
        for i in range(15):
            tracker.start("pdf_summary", f"item-{i}")
            clock.advance(1000 if i < 5 else 10)
            tracker.complete("pdf_summary", f"item-{i}")

        assert tracker.average_duration() == 10.0

    def test_interleaved_items_measured_by_label(self, clock):
        tracker = ProgressTracker(total=2, clock=clock)
        tracker.start("transcription", "a")
        clock.advance(100)
        tracker.start("transcription", "b")
        clock.advance(50)
        tracker.complete("transcription", "b")
        tracker.complete("transcription", "a")

        assert tracker.average_duration() == 100.0

    def test_eta_from_remaining_items(self, clock):
        tracker = ProgressTracker(total=11, clock=clock)
        tracker.start("image_analysis", "x")
        clock.advance(1500)
        tracker.complete("image_analysis", "x")

        assert tracker.eta_seconds() == 15


class TestCheckpointSignal:
    """Checkpoint interval counting."""

    def test_signals_at_interval_and_resets_on_ack(self, clock):
        tracker = ProgressTracker(total=10, checkpoint_interval=3, clock=clock)
        for _ in range(2):
            tracker.complete("image_analysis")
        assert tracker.should_checkpoint() is False

        tracker.complete("image_analysis")
        assert tracker.should_checkpoint() is True

        tracker.start_checkpoint_write()
        assert tracker.progress().is_checkpointing is True
        tracker.complete_checkpoint_write()
        assert tracker.should_checkpoint() is False
        assert tracker.progress().is_checkpointing is False

    def test_initial_processed_counts_toward_progress_only(self, clock):
        tracker = ProgressTracker(total=10, checkpoint_interval=3, clock=clock, initial_processed=5)
        snapshot = tracker.progress()

        assert snapshot.processed == 5
        assert snapshot.percentage == 50
        assert tracker.should_checkpoint() is False

    def test_empty_batch_is_complete(self, clock):
        assert ProgressTracker(total=0, clock=clock).progress().percentage == 100


class TestCallbacks:
    """Observer notifications."""

    def test_callbacks_fire(self, clock):
        callbacks = MagicMock(spec=ProgressCallbacks)
        tracker = ProgressTracker(total=1, callbacks=callbacks, clock=clock)

        tracker.start("link_context", "page.html")
        tracker.complete("link_context", "page.html")
        tracker.start_checkpoint_write()
        tracker.complete_checkpoint_write()

        callbacks.on_item_start.assert_called_once_with("link_context", "page.html")
        callbacks.on_item_complete.assert_called_once_with("link_context")
        callbacks.on_checkpoint_start.assert_called_once_with()
        callbacks.on_checkpoint_complete.assert_called_once_with()

    def test_raising_callback_is_swallowed(self, clock):
        callbacks = MagicMock(spec=ProgressCallbacks)
        callbacks.on_item_complete.side_effect = RuntimeError("ui went away")
        tracker = ProgressTracker(total=2, callbacks=callbacks, clock=clock)

        tracker.start("image_analysis", "a")
        tracker.complete("image_analysis", "a")

        assert tracker.progress().processed == 1

    def test_default_callbacks_are_noops(self, clock):
        tracker = ProgressTracker(total=1, clock=clock)
        tracker.start("image_analysis", "a")
        tracker.complete("image_analysis", "a")
        tracker.start_checkpoint_write()
        tracker.complete_checkpoint_write()
        assert tracker.progress().percentage == 100


class TestKeyedDurations:
    """Units identified by key rather than label."""

    def test_repeated_labels_do_not_collide(self, clock):
        tracker = ProgressTracker(total=2, clock=clock)
        tracker.start("image_analysis", "IMG_0001.jpg", key=0)
        clock.advance(300)
        tracker.start("image_analysis", "IMG_0001.jpg", key=1)
        clock.advance(100)
        tracker.complete("image_analysis", 1)
        tracker.complete("image_analysis", 0)

        assert tracker.average_duration() == 250.0


class TestKindProgress:
    """Per-kind totals and counts."""

    def test_counts_by_kind(self, clock):
        tracker = ProgressTracker(total=5, clock=clock)
        tracker.set_kind_total("image_analysis", 3)
        tracker.set_kind_total("pdf_summary", 2)

        for i in range(2):
            tracker.start("image_analysis", f"img-{i}", key=i)
            tracker.complete("image_analysis", i)
        tracker.start("pdf_summary", "doc.pdf", key=2)
        tracker.complete("pdf_summary", 2)

        by_kind = tracker.progress().by_kind
        assert by_kind["image_analysis"] == KindProgress(completed=2, total=3)
        assert by_kind["pdf_summary"] == KindProgress(completed=1, total=2)

    def test_increment_without_total(self, clock):
        tracker = ProgressTracker(total=1, clock=clock)
        tracker.increment_kind("link_context", 4)
        assert tracker.progress().by_kind["link_context"] == KindProgress(completed=4, total=0)

    def test_snapshot_is_a_copy(self, clock):
        tracker = ProgressTracker(total=1, clock=clock)
        tracker.set_kind_total("transcription", 1)
        snapshot = tracker.progress()
        tracker.complete("transcription")

        assert snapshot.by_kind["transcription"].completed == 0

    def test_begin_and_kind_totals_notify(self, clock):
        callbacks = MagicMock(spec=ProgressCallbacks)
        tracker = ProgressTracker(total=10, callbacks=callbacks, clock=clock, initial_processed=4)

        tracker.set_kind_total("video_metadata", 6)
        tracker.begin()

        callbacks.on_kind_total.assert_called_once_with("video_metadata", 6)
        callbacks.on_run_start.assert_called_once_with(10, 4)
