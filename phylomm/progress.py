"""
Progress reporting for PhyloMM Monte Carlo loops.

Bootstrap refits and expectation tables report progress through a simple
``(current, total)`` callback, so they work the same from scripts and
notebooks.
"""

import sys
from typing import Callable, Optional


class ProgressReporter:
    """Wraps a ``(current, total)`` callback with counting and throttling.

    Tracks the number of completed replicates and fires the callback at most
    once every *update_every* advances.

    Args:
        total: Total number of replicates.
        callback: Function called as ``callback(current, total)`` on each
            (throttled) update.
        update_every: Fire the callback at most once per this many advances.
            Defaults to ``max(1, total // 100)``.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
    ):
        self.total = total
        self._callback = callback
        self._current = 0
        self.update_every = update_every if update_every is not None else max(1, total // 100)

    @property
    def current(self) -> int:
        return self._current

    def start(self):
        """Signal the beginning of the run (fires an initial 0/total update)."""
        self._current = 0
        self._callback(0, self.total)

    def advance(self, n: int = 1):
        """Advance the counter by *n* steps, firing the callback when due."""
        self._current += n
        if self._current >= self.total or self._current % self.update_every == 0:
            self._callback(self._current, self.total)

    def finish(self):
        """Signal completion (fires a final total/total update if not already there)."""
        if self._current < self.total:
            self._current = self.total
            self._callback(self.total, self.total)


def make_reporter(total: int, callback, verbose: bool = False) -> Optional[ProgressReporter]:
    """Return a started ``ProgressReporter``, or ``None`` when progress is off.

    Args:
        total: Number of replicates in the loop.
        callback: Progress reporting control:
            - ``None``: use ``PrintReporter`` when *verbose* is ``True``.
            - ``False``: explicitly disable progress.
            - callable ``(current, total)``: custom callback.
        verbose: Whether the calling routine prints its own traces.
    """
    if callback is None:
        callback = PrintReporter() if verbose else None
    elif callback is False:
        callback = None
    if callback is None:
        return None
    reporter = ProgressReporter(total, callback)
    reporter.start()
    return reporter


class PrintReporter:
    """Console progress reporter printing ``\\rProgress: 45.2% (452/1000 replicates)``."""

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        pct = 100.0 * current / total
        sys.stderr.write(f"\rProgress: {pct:5.1f}% ({current}/{total} replicates)")
        sys.stderr.flush()
        if current >= total:
            sys.stderr.write("\n")
            sys.stderr.flush()


class TqdmReporter:
    """Optional tqdm-based progress reporter (lazy import).

    Usage::

        from phylomm.progress import TqdmReporter
        cor_phylo(X, Vphy=V, boot=500, progress_callback=TqdmReporter())
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="rep", **self._tqdm_kwargs)

        delta = current - self._bar.n
        if delta > 0:
            self._bar.update(delta)

        if current >= total:
            self._bar.close()
            self._bar = None
