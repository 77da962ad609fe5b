import threading
import time

import numpy as np
import pandas as pd
import pytest

from spermcasa.core.common import AnalysisCancelled, Detection
from spermcasa.core.feed import (
    END_OF_STREAM,
    DataFrameDetectionFeed,
    FrameReorderBuffer,
    IterableDetectionFeed,
    as_detection_feed,
    iter_frames,
)


class SlowFeed:
    """Feed whose early frames take longest, so workers finish out of order."""

    def __init__(self, n_frames, fail_at=None):
        self.n_frames = n_frames
        self.fail_at = fail_at
        self.calls = []
        self._lock = threading.Lock()

    def next_frame_detections(self, frame_index):
        with self._lock:
            self.calls.append(frame_index)
        if frame_index >= self.n_frames:
            return END_OF_STREAM
        if frame_index == self.fail_at:
            raise RuntimeError("decoder error")
        time.sleep(0.001 * ((self.n_frames - frame_index) % 4))
        return [Detection(float(frame_index), 0.0, 10.0, frame_index)]


def test_buffer_releases_frames_in_order():
    buffer = FrameReorderBuffer(capacity=8)
    for index in (2, 0, 3, 1):
        assert buffer.put(index, [])
    buffer.mark_end(4)

    released = []
    while (item := buffer.get()) is not None:
        released.append(item[0])
    assert released == [0, 1, 2, 3]


def test_buffer_applies_backpressure():
    buffer = FrameReorderBuffer(capacity=2)
    buffer.put(1, [])
    admitted = threading.Event()

    def producer():
        buffer.put(2, [])
        admitted.set()

    thread = threading.Thread(target=producer, daemon=True)
    thread.start()
    # Frame 2 is two frames ahead of the consumer and has to wait
    assert not admitted.wait(0.2)

    buffer.put(0, [])
    assert buffer.get()[0] == 0
    assert admitted.wait(2.0)
    thread.join(2.0)
    assert [buffer.get()[0], buffer.get()[0]] == [1, 2]


def test_buffer_close_wakes_blocked_producer():
    buffer = FrameReorderBuffer(capacity=1)
    results = []
    thread = threading.Thread(target=lambda: results.append(buffer.put(5, [])))
    thread.start()
    buffer.close()
    thread.join(2.0)

    assert results == [False]
    assert buffer.get() is None


def test_buffer_reraises_worker_error():
    buffer = FrameReorderBuffer(capacity=4)
    buffer.fail(RuntimeError("boom"))

    with pytest.raises(RuntimeError, match="boom"):
        buffer.get()


def test_buffer_rejects_invalid_capacity():
    with pytest.raises(ValueError):
        FrameReorderBuffer(capacity=0)


def test_dataframe_feed_fills_gaps():
    df = pd.DataFrame(
        {"frame": [0, 0, 3], "x": [1.0, 2.0, 3.0], "y": [0.0] * 3, "area": [10.0] * 3}
    )
    feed = DataFrameDetectionFeed(df)

    assert len(feed.next_frame_detections(0)) == 2
    assert feed.next_frame_detections(1) == []
    assert feed.next_frame_detections(3)[0].x == 3.0
    assert feed.next_frame_detections(4) is END_OF_STREAM


def test_dataframe_feed_requires_columns():
    with pytest.raises(ValueError, match="area"):
        DataFrameDetectionFeed(pd.DataFrame({"frame": [0], "x": [0.0], "y": [0.0]}))


def test_as_detection_feed():
    assert isinstance(as_detection_feed([[], []]), IterableDetectionFeed)
    feed = SlowFeed(3)
    assert as_detection_feed(feed) is feed
    with pytest.raises(TypeError):
        as_detection_feed(42)


def test_unreadable_frame_is_empty():
    feed = IterableDetectionFeed([[Detection(1, 1, 10)], None, []])

    assert list(iter_frames(feed)) == [(0, [Detection(1, 1, 10)]), (1, []), (2, [])]


@pytest.mark.parametrize("n_workers", [1, 4])
def test_iter_frames_preserves_order(n_workers):
    feed = SlowFeed(20)
    frames = list(iter_frames(feed, n_workers=n_workers, buffer_size=3))

    assert [index for index, _ in frames] == list(range(20))
    assert all(dets[0].x == index for index, dets in frames)


def test_worker_error_propagates():
    with pytest.raises(RuntimeError, match="decoder error"):
        list(iter_frames(SlowFeed(20, fail_at=7), n_workers=3, buffer_size=4))


@pytest.mark.parametrize("n_workers", [1, 3])
def test_cancellation_stops_iteration(n_workers):
    cancel = threading.Event()
    frames = iter_frames(SlowFeed(1000), n_workers=n_workers, buffer_size=4, cancel_event=cancel)
    seen = []

    with pytest.raises(AnalysisCancelled):
        for index, _ in frames:
            seen.append(index)
            if index == 5:
                cancel.set()

    assert seen[:6] == [0, 1, 2, 3, 4, 5]
    assert len(seen) < 1000


class LazyFeed:
    """Returns generators; the one for ``fail_at`` raises while being consumed."""

    def __init__(self, n_frames, fail_at):
        self.n_frames = n_frames
        self.fail_at = fail_at

    def next_frame_detections(self, frame_index):
        if frame_index >= self.n_frames:
            return END_OF_STREAM
        return self._detections(frame_index)

    def _detections(self, frame_index):
        if frame_index == self.fail_at:
            raise RuntimeError("decode failed lazily")
        yield Detection(float(frame_index), 0.0, 10.0, frame_index)


@pytest.mark.parametrize("n_workers", [1, 2])
def test_error_while_reading_detections_reaches_consumer(n_workers):
    errors = []

    def consume():
        try:
            list(iter_frames(LazyFeed(20, fail_at=2), n_workers=n_workers, buffer_size=4))
        except RuntimeError as e:
            errors.append(e)

    consumer = threading.Thread(target=consume, daemon=True)
    consumer.start()
    consumer.join(5.0)

    assert not consumer.is_alive()
    assert [str(e) for e in errors] == ["decode failed lazily"]


def test_array_detections_are_accepted():
    dets = np.array([Detection(1.0, 2.0, 10.0), Detection(3.0, 4.0, 10.0)], dtype=object)
    feed = IterableDetectionFeed([dets, dets])

    frames = list(iter_frames(feed, n_workers=2, buffer_size=2))
    assert [index for index, _ in frames] == [0, 1]
    assert frames[1][1] == [Detection(1.0, 2.0, 10.0), Detection(3.0, 4.0, 10.0)]
