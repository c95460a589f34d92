"""
Execution timing utilities.

Provides accurate timing for CPU and GPU execution. GPU kernels launch
asynchronously, so the timer synchronizes the target device before each
measurement when one is given.
"""

import time
from contextlib import contextmanager
from typing import Iterator


class Timer:
    """
    Accumulating timer with optional device synchronization.

    The runtime times each phase of a compute request (select, cache,
    execute, ...) so Result.timing shows where latency went.

    Usage:
        timer = Timer(device='cuda')
        timer.start()

        with timer.section('select'):
            plan = select(...)

        with timer.section('execute'):
            out = executor.run(workload, plan)

        timer.stop()
        timer.result()
        # {'total_seconds': 0.05, 'select': 0.0001, 'execute': 0.049}
    """

    def __init__(self, device: str | None = None):
        """
        Initialize timer.

        Args:
            device: torch device string ('cuda', 'cuda:0', 'mps') to
                synchronize that device around every measurement; None (or
                'cpu') for no synchronization.
        """
        self._device: str | None = None
        self._sections: dict[str, float] = {}
        self._start_time: float | None = None
        self._total: float | None = None
        self.attach_device(device)

    def attach_device(self, device: str | None) -> None:
        """Synchronize device around every later measurement."""
        kind = device.split(':')[0] if device else None
        self._device = kind if kind in ('cuda', 'mps') else None

    def _sync(self) -> None:
        """Synchronize the GPU if one is being timed."""
        if self._device is None:
            return
        try:
            import torch
        except ImportError:
            return
        if self._device == 'cuda' and torch.cuda.is_available():
            torch.cuda.synchronize()
        elif self._device == 'mps' and hasattr(torch, 'mps'):
            torch.mps.synchronize()

    def start(self) -> None:
        """Start the overall timer."""
        self._sync()
        self._start_time = time.perf_counter()

    def stop(self) -> None:
        """Stop the overall timer."""
        self._sync()
        if self._start_time is None:
            raise RuntimeError("Timer.stop() called before start()")
        self._total = time.perf_counter() - self._start_time

    @property
    def running(self) -> bool:
        return self._start_time is not None and self._total is None

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        """
        Time a named section.

        Repeated sections with the same name accumulate.
        """
        self._sync()
        start = time.perf_counter()
        try:
            yield
        finally:
            self._sync()
            elapsed = time.perf_counter() - start
            self._sections[name] = self._sections.get(name, 0.0) + elapsed

    def result(self) -> dict[str, float]:
        """
        Get timing results.

        Returns:
            Dictionary with 'total_seconds' and all section timings

        Raises:
            RuntimeError: If called before stop()
        """
        if self._total is None:
            raise RuntimeError("Timer.result() called before stop()")

        result = {'total_seconds': self._total}
        result.update(self._sections)
        return result


@contextmanager
def timed(device: str | None = None) -> Iterator[Timer]:
    """
    Context manager for simple timing.

    Usage:
        with timed() as timer:
            result = expensive_computation()
        print(f"Took {timer.result()['total_seconds']:.3f}s")
    """
    timer = Timer(device=device)
    timer.start()
    try:
        yield timer
    finally:
        timer.stop()
