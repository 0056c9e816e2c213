"""Long-lived analysis state shared by watch mode and query commands."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Optional

from .analyzer import AnalyzeOptions, analyze_directory
from .models import Graph

logger = logging.getLogger(__name__)

Analyzer = Callable[[Path, Optional[AnalyzeOptions]], Graph]


class TopologyState:
    """Holds the latest graph for one directory.

    :meth:`refresh` is single-flight: while an analysis is running, further
    callers wait for it and receive the same graph (or the same exception)
    instead of starting another one.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        options: Optional[AnalyzeOptions] = None,
        analyzer: Analyzer = analyze_directory,
    ) -> None:
        self.path = Path(path) if path is not None else Path.cwd()
        self.options = options
        self._analyzer = analyzer
        self._graph: Optional[Graph] = None
        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None

    def ensure_graph(self, options: Optional[AnalyzeOptions] = None) -> Graph:
        if self._graph is not None:
            return self._graph
        return self.refresh(options)

    def refresh(self, options: Optional[AnalyzeOptions] = None) -> Graph:
        with self._lock:
            future = self._in_flight
            owner = future is None
            if owner:
                future = Future()
                self._in_flight = future

        if not owner:
            logger.debug("Analysis already running for %s; waiting", self.path)
            return future.result()

        try:
            graph = self._analyzer(self.path, options or self.options)
        except BaseException as exc:
            with self._lock:
                self._in_flight = None
            future.set_exception(exc)
            raise

        with self._lock:
            self._graph = graph
            self._in_flight = None
        future.set_result(graph)
        return graph

    def get_graph(self) -> Optional[Graph]:
        return self._graph
