"""Bounded fan-out / fan-in for independent model calls."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ModelTimeout, TurnCancelled

logger = logging.getLogger(__name__)


@dataclass
class Settled:
    """Outcome of one call: exactly one of ``value`` / ``error`` is meaningful."""

    key: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def gather_settled(
    calls: Mapping[str, Callable[[], Any]],
    *,
    timeout: Optional[float] = None,
    max_workers: int = 4,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Settled]:
    """Run ``calls`` in parallel and collect every outcome, successful or not.

    The join is bounded by ``timeout`` seconds for the whole batch; calls that
    have not finished by then are settled as :class:`ModelTimeout` and their
    late results are discarded.  Calls that have not started when ``cancel``
    is set are never issued and settle as :class:`TurnCancelled`.  Results are
    keyed and ordered like ``calls``.
    """

    if not calls:
        return {}

    def guarded(key: str, func: Callable[[], Any]) -> Any:
        if cancel is not None and cancel.is_set():
            raise TurnCancelled(f"Call {key} not started: turn cancelled")
        return func()

    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(calls))))
    futures: Dict[str, Future] = {}
    try:
        for key, func in calls.items():
            futures[key] = executor.submit(guarded, key, func)
        done, pending = wait(futures.values(), timeout=timeout)
    finally:
        # stragglers keep running on their threads; nothing waits for them
        executor.shutdown(wait=False, cancel_futures=True)

    results: Dict[str, Settled] = {}
    for key, future in futures.items():
        if future in done and not future.cancelled():
            error = future.exception()
            if error is None:
                results[key] = Settled(key, value=future.result())
            else:
                results[key] = Settled(key, error=error)
        else:
            future.cancel()
            logger.warning("Call %s did not finish within %ss", key, timeout)
            results[key] = Settled(key, error=ModelTimeout(f"{key} timed out after {timeout}s"))
    return results


__all__ = ["Settled", "gather_settled"]
