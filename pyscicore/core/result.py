"""
Result container for pyscicore compute requests.

Every public compute entry point returns a Result (or raises a typed error).
The envelope carries the owned output buffers together with the diagnostics
numeric packages need: which strategy ran, whether the cache answered,
timing, and non-fatal warnings such as strategy fallbacks.

Design decisions:
    - Generic over the output payload type B (Buffer in practice)
    - info dict for flexible metadata (strategy, chunk_size, cache_hit)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True) for reproducibility
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

B = TypeVar('B')  # Output payload type


@dataclass(frozen=True)
class Result(Generic[B]):
    """
    Immutable result envelope for compute requests.

    Attributes:
        outputs: Owned output payloads, in operation-defined order
            (e.g. (Q, R) for a QR factorization)
        info: Structured metadata (operation, strategy, cache_hit, ...)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the backend that produced this result
            (e.g. 'parallel', 'gpu', 'openblas')
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> result = ctx.compute('matmul', A, B)
        >>> result.output.array.shape
        (2000, 2000)
        >>> result.info['strategy']
        'parallel'
    """
    outputs: tuple[B, ...]
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def output(self) -> B:
        """The single output of a one-output operation."""
        if len(self.outputs) != 1:
            raise ValueError(
                f"Result has {len(self.outputs)} outputs; use .outputs instead"
            )
        return self.outputs[0]

    @property
    def cache_hit(self) -> bool:
        """True if the outputs were served from the computation cache."""
        return bool(self.info.get('cache_hit', False))

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
