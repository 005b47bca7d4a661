"""
Streaming sample outputs (``--out json=results.json``).

Virtual users must never wait on disk I/O, so :class:`JsonLinesOutput`
only enqueues samples; a background writer thread drains the queue and
writes one JSON object per line::

    {"type": "Point", "metric": "http_req_duration",
     "data": {"time": "2024-05-01T12:00:00.123456+00:00", "value": 12.3,
              "tags": {"method": "GET", "status": "200", ...}}}
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from vuload.exceptions import OptionsError
from vuload.metrics import Sample

logger = logging.getLogger(__name__)

_STOP = object()


class JsonLinesOutput:
    """
    Write every sample as a JSON line to *path*.

    Use as a context manager, or call :meth:`start` and :meth:`close`.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._queue: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._thread: threading.Thread | None = None
        self._handle: TextIO | None = None
        self.written = 0

    def __enter__(self) -> JsonLinesOutput:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("w", encoding="utf-8")
        self._thread = threading.Thread(
            target=self._drain, args=(self._handle,), name="json-output", daemon=True
        )
        self._thread.start()
        logger.info("Writing samples to %s", self.path)

    def write(self, sample: Sample) -> None:
        self._queue.put(sample)

    def close(self) -> None:
        """Flush everything queued so far and close the file."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        logger.debug("Wrote %d samples to %s", self.written, self.path)

    def _drain(self, handle: TextIO) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            handle.write(json.dumps(to_point(item)) + "\n")
            self.written += 1


def to_point(sample: Sample) -> dict[str, object]:
    return {
        "type": "Point",
        "metric": sample.metric,
        "data": {
            "time": datetime.fromtimestamp(sample.time, tz=timezone.utc).isoformat(),
            "value": sample.value,
            "tags": dict(sample.tags),
        },
    }


def parse_output_flag(value: str) -> JsonLinesOutput:
    """
    Build an output from an ``--out`` value such as ``json=results.json``.

    Raises:
        OptionsError: For unknown output types or a missing path.
    """
    kind, sep, target = value.partition("=")
    if kind != "json" or not sep or not target:
        raise OptionsError(f"Unsupported output {value!r}; expected json=<path>")
    return JsonLinesOutput(target)
