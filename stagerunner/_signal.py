"""Double-Ctrl-C cancellation handler for pipeline runs."""

from __future__ import annotations

import os
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager


@contextmanager
def cancel_on_signal(
    cancel: Callable[[], None],
) -> Iterator[threading.Event]:
    """Route SIGINT/SIGTERM to *cancel* for the duration of the block.

    First signal: calls *cancel* so the running stage's process group is
    terminated and remaining stages are skipped.
    Second signal: calls ``os._exit(1)`` immediately.

    Yields the ``cancelling`` event for external inspection. Previous
    handlers are restored on exit. Must be entered from the main thread.
    """
    cancelling = threading.Event()

    def _handler(signum: int, frame: object) -> None:
        if cancelling.is_set():
            print("\nForce shutdown.", file=sys.stderr, flush=True)
            os._exit(1)
        cancelling.set()
        print("\nCancelling run (press Ctrl-C again to force)...", file=sys.stderr, flush=True)
        cancel()

    previous_int = signal.signal(signal.SIGINT, _handler)
    previous_term = signal.signal(signal.SIGTERM, _handler)
    try:
        yield cancelling
    finally:
        signal.signal(signal.SIGINT, previous_int)
        signal.signal(signal.SIGTERM, previous_term)
