#!/usr/bin/env python3
"""
Detection feed adapters and the order-preserving frame pipeline.

A detection feed answers ``next_frame_detections(frame_index)`` with the list
of detections in that frame, ``None`` for an unreadable frame (treated as a
frame without detections) or ``END_OF_STREAM``. Detection is independent per
frame, so several workers may query the feed concurrently; their results are
re-ordered by a bounded buffer and released to the tracker strictly by frame
index.
"""

from __future__ import annotations

import heapq
import logging
import threading
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, Union

import pandas as pd

from .common.data_structures import Detection
from .common.errors import AnalysisCancelled

logger = logging.getLogger(__name__)

# Consumer wake-up interval while waiting, so cancellation is noticed promptly
_POLL_INTERVAL_SEC = 0.05


class _EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()

FrameResult = Union[Sequence[Detection], None, _EndOfStream]


class DetectionFeed(Protocol):
    def next_frame_detections(self, frame_index: int) -> FrameResult:
        ...


class DataFrameDetectionFeed:
    """Feed backed by a detections DataFrame with frame, x, y, area columns."""

    REQUIRED_COLUMNS = ("frame", "x", "y", "area")

    def __init__(self, detections_df: pd.DataFrame):
        if missing := set(self.REQUIRED_COLUMNS) - set(detections_df.columns):
            raise ValueError(f"Missing {sorted(missing)}")

        self._frames: Dict[int, List[Detection]] = {}
        for frame, group in detections_df.sort_index().groupby("frame", sort=True):
            self._frames[int(frame)] = [
                Detection(float(x), float(y), float(a), int(frame))
                for x, y, a in zip(group["x"], group["y"], group["area"])
            ]
        self.last_frame = max(self._frames) if self._frames else -1

    def next_frame_detections(self, frame_index: int) -> FrameResult:
        if frame_index > self.last_frame:
            return END_OF_STREAM
        return self._frames.get(frame_index, [])


class IterableDetectionFeed:
    """Feed over an in-memory sequence of per-frame detection lists."""

    def __init__(self, frames: Sequence[Optional[Sequence[Detection]]]):
        self._frames = list(frames)

    def next_frame_detections(self, frame_index: int) -> FrameResult:
        if frame_index >= len(self._frames):
            return END_OF_STREAM
        return self._frames[frame_index]


def _materialize(detections: FrameResult):
    """Turn a feed answer into a concrete list; None means an unreadable frame."""
    if detections is END_OF_STREAM:
        return detections
    return [] if detections is None else list(detections)


def as_detection_feed(source) -> DetectionFeed:
    if isinstance(source, pd.DataFrame):
        return DataFrameDetectionFeed(source)
    if isinstance(source, (list, tuple)):
        return IterableDetectionFeed(source)
    if not hasattr(source, "next_frame_detections"):
        raise TypeError(f"Not a detection feed: {type(source).__name__}")
    return source


class FrameReorderBuffer:
    """
    Bounded buffer that releases frames strictly in index order.

    ``put`` blocks while the frame is ``capacity`` or more frames ahead of the
    next index the consumer expects, so the frame the consumer is waiting for
    is always accepted. ``get`` returns the next frame, or None once the end
    of stream has been reached or the buffer was closed.
    """

    def __init__(self, capacity: int, start_index: int = 0):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._heap: List[Tuple[int, List[Detection]]] = []
        self._next = start_index
        self._end: Optional[int] = None
        self._closed = False
        self._error: Optional[BaseException] = None
        self._cond = threading.Condition()

    @property
    def next_index(self) -> int:
        return self._next

    def put(self, index: int, detections: List[Detection]) -> bool:
        """Store a frame; returns False when the buffer was closed meanwhile."""
        with self._cond:
            while not self._closed and index >= self._next + self.capacity:
                self._cond.wait()
            if self._closed:
                return False
            if index < self._next:
                raise ValueError(f"Frame {index} was already released")
            heapq.heappush(self._heap, (index, detections))
            self._cond.notify_all()
            return True

    def mark_end(self, end_index: int):
        """Record that no frame exists at ``end_index`` or beyond."""
        with self._cond:
            if self._end is None or end_index < self._end:
                self._end = end_index
            self._cond.notify_all()

    def fail(self, error: BaseException):
        with self._cond:
            if self._error is None:
                self._error = error
            self._closed = True
            self._cond.notify_all()

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(
        self, cancel_event: Optional[threading.Event] = None
    ) -> Optional[Tuple[int, List[Detection]]]:
        with self._cond:
            while True:
                if self._error is not None:
                    raise self._error
                if cancel_event is not None and cancel_event.is_set():
                    raise AnalysisCancelled("Analysis cancelled while waiting for frames")
                if self._end is not None and self._next >= self._end:
                    return None
                if self._heap and self._heap[0][0] == self._next:
                    item = heapq.heappop(self._heap)
                    self._next += 1
                    self._cond.notify_all()
                    return item
                if self._closed:
                    return None
                self._cond.wait(_POLL_INTERVAL_SEC if cancel_event is not None else None)


class FramePrefetcher:
    """
    Runs ``n_workers`` threads that query the feed for consecutive frame
    indices and hand the results to a FrameReorderBuffer. Iterating the
    prefetcher yields (frame_index, detections) in index order.
    """

    def __init__(
        self,
        feed: DetectionFeed,
        n_workers: int,
        buffer_size: int,
        cancel_event: Optional[threading.Event] = None,
        start_index: int = 0,
    ):
        self.feed = feed
        self.n_workers = n_workers
        self.cancel_event = cancel_event
        self.buffer = FrameReorderBuffer(buffer_size, start_index)
        self._lock = threading.Lock()
        self._next_claim = start_index
        self._end_claim: Optional[int] = None
        self._threads: List[threading.Thread] = []

    def __enter__(self) -> "FramePrefetcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def start(self):
        for n in range(self.n_workers):
            thread = threading.Thread(
                target=self._worker, name=f"detect-worker-{n}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.debug("Started %d detection workers", self.n_workers)

    def stop(self):
        self.buffer.close()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def __iter__(self) -> Iterator[Tuple[int, List[Detection]]]:
        while True:
            item = self.buffer.get(self.cancel_event)
            if item is None:
                return
            yield item

    def _claim(self) -> Optional[int]:
        with self._lock:
            if self._end_claim is not None and self._next_claim >= self._end_claim:
                return None
            index = self._next_claim
            self._next_claim += 1
            return index

    def _worker(self):
        # Every failure is handed to the consumer through the buffer
        try:
            self._fetch_frames()
        except Exception as e:
            self.buffer.fail(e)

    def _fetch_frames(self):
        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                return
            index = self._claim()
            if index is None:
                return

            try:
                detections = _materialize(self.feed.next_frame_detections(index))
            except Exception as e:
                logger.error("Detection feed failed on frame %d: %s", index, e)
                raise

            if detections is END_OF_STREAM:
                with self._lock:
                    if self._end_claim is None or index < self._end_claim:
                        self._end_claim = index
                self.buffer.mark_end(index)
                return

            if not self.buffer.put(index, detections):
                return


def iter_frames(
    feed: DetectionFeed,
    n_workers: int = 1,
    buffer_size: int = 64,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[Tuple[int, List[Detection]]]:
    """
    Yield (frame_index, detections) from a feed in strict index order.

    With a single worker the feed is queried inline; otherwise a
    FramePrefetcher runs the workers. Raises AnalysisCancelled when
    ``cancel_event`` is set between frames.
    """
    if n_workers <= 1:
        index = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise AnalysisCancelled("Analysis cancelled between frames")
            detections = _materialize(feed.next_frame_detections(index))
            if detections is END_OF_STREAM:
                return
            yield index, detections
            index += 1
    else:
        with FramePrefetcher(feed, n_workers, buffer_size, cancel_event) as prefetcher:
            yield from prefetcher
