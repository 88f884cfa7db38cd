"""Progress observer shared by all layers; each layer reports in its own 0..1 range."""

from typing import Callable

ProgressSink = Callable[[float, str], None]


class _Emitter:
    """Root state shared by a channel and all of its children: the sink and the last value sent."""

    __slots__ = ("sink", "last")

    def __init__(self, sink: ProgressSink | None) -> None:
        self.sink = sink
        self.last = 0.0

    def emit(self, value: float, message: str) -> None:
        # Never report backwards, even if a sub-phase restarts its local range.
        if value < self.last:
            value = self.last
        self.last = value
        if self.sink is not None:
            self.sink(value, message)


class ProgressChannel:
    """
    Maps local progress (0..1) into [start, end] of the caller's scale.

    child(a, b) returns a channel whose 0..1 covers [a, b] of this channel's local range, so a
    layer never needs to know where its parent sits in the overall 0..1 scale.
    """

    def __init__(
        self,
        sink: ProgressSink | None = None,
        start: float = 0.0,
        end: float = 1.0,
        *,
        _emitter: _Emitter | None = None,
    ) -> None:
        self._emitter = _emitter if _emitter is not None else _Emitter(sink)
        self._start = start
        self._end = end

    @property
    def value(self) -> float:
        """Last fraction sent to the sink (overall scale)."""
        return self._emitter.last

    def report(self, fraction: float, message: str = "") -> None:
        fraction = max(0.0, min(1.0, fraction))
        self._emitter.emit(self._start + (self._end - self._start) * fraction, message)

    def child(self, start: float, end: float) -> "ProgressChannel":
        span = self._end - self._start
        return ProgressChannel(
            start=self._start + span * start,
            end=self._start + span * end,
            _emitter=self._emitter,
        )


def null_channel() -> ProgressChannel:
    """Channel that discards all reports."""
    return ProgressChannel(None)
