"""Tests for the progress aggregator."""

import threading

import pytest

from clipretime.progress import DEFAULT_WEIGHTS, ProgressAggregator


class TestProgressAggregator:
    def test_default_weights_sum_to_one(self):
        assert sum(DEFAULT_WEIGHTS.values()) == pytest.approx(1.0)

    def test_weighted_accumulation(self):
        progress = ProgressAggregator({"a": 0.25, "b": 0.75})
        assert progress.report("a", 1.0) == pytest.approx(0.25)
        assert progress.report("b", 0.5) == pytest.approx(0.625)

    def test_duplicate_report_adds_nothing(self):
        progress = ProgressAggregator({"a": 0.5, "b": 0.5})
        progress.report("a", 0.4)
        assert progress.report("a", 0.4) == pytest.approx(0.2)

    def test_out_of_order_report_never_decreases(self):
        progress = ProgressAggregator({"a": 0.5, "b": 0.5})
        progress.report("a", 0.8)
        assert progress.report("a", 0.3) == pytest.approx(0.4)
        assert progress.fraction("a") == 0.8

    def test_all_complete_reaches_one(self):
        progress = ProgressAggregator()
        for name in DEFAULT_WEIGHTS:
            progress.complete(name)
        assert progress.value == pytest.approx(1.0)
        assert progress.value <= 1.0

    def test_fraction_is_clamped(self):
        progress = ProgressAggregator({"a": 1.0})
        assert progress.report("a", 7.0) == 1.0
        assert progress.report("a", -3.0) == 1.0

    def test_unknown_contributor(self):
        with pytest.raises(KeyError):
            ProgressAggregator().report("subtitles", 0.5)

    @pytest.mark.parametrize("weights", [{"a": 0.5}, {"a": 0.5, "b": 0.6}, {"a": 1.5, "b": -0.5}])
    def test_rejects_bad_weights(self, weights):
        with pytest.raises(ValueError):
            ProgressAggregator(weights)


class TestProgressCallback:
    def test_called_only_on_increase(self):
        calls = []
        progress = ProgressAggregator({"a": 1.0}, on_change=lambda v, p: calls.append(v))
        progress.report("a", 0.5)
        progress.report("a", 0.5)
        progress.report("a", 0.2)
        progress.report("a", 1.0)
        assert calls == [pytest.approx(0.5), pytest.approx(1.0)]

    def test_preview_forces_notification(self):
        calls = []
        progress = ProgressAggregator({"a": 1.0}, on_change=lambda v, p: calls.append((v, p)))
        progress.report("a", 0.5, preview="frame-1")
        progress.report("a", 0.5, preview="frame-2")
        assert [p for _, p in calls] == ["frame-1", "frame-2"]

    def test_callback_may_read_value(self):
        seen = []
        progress = ProgressAggregator({"a": 1.0})
        progress._on_change = lambda v, p: seen.append(progress.value)
        progress.report("a", 0.3)
        assert seen == [pytest.approx(0.3)]

    def test_concurrent_reports_are_monotonic(self):
        values = []
        progress = ProgressAggregator(
            {"video": 0.5, "audio": 0.5}, on_change=lambda v, p: values.append(v)
        )

        def worker(name):
            for i in range(1, 501):
                progress.report(name, i / 500)

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("video", "audio")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert values == sorted(values)
        assert progress.value == pytest.approx(1.0)
