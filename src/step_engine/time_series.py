# step_engine/src/step_engine/time_series.py
"""
Lazy time series producer.

TimeSeries drives a scheme across many steps and yields ``(t, state)`` pairs
on demand. Without sampling, each ``next()`` commits exactly one step. With a
SamplingConfig, each ``next()`` takes as many internal steps as needed to
reach the next output time ``t0 + k * interval``:

- alignment="exact": the last internal step is shortened so it lands on the
  output time, and the emitted time is exactly ``t0 + k * interval``.
- alignment="nearest": internal steps (never longer than the interval) are
  taken until the output time is reached or passed; the emitted pair is the nearer (in time) of the last two
  committed states, ties going to the later one. Integration always continues
  from the latest committed state.

The sequence is infinite. It cannot be rewound; a new producer built with
TimeSeries.from_checkpoint continues a run exactly as the original would have.

The producer owns two state buffers and swaps them after every committed
step, so the previously committed state stays available for "nearest"
sampling without an extra copy. Emitted states are always fresh copies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, cast

import numpy as np

from .errors import ConfigurationError, raise_non_finite_state
from .scheme import FixedStepScheme, Scheme, StepResult, check_step_size
from .state import Checkpoint, count_non_finite

if TYPE_CHECKING:
    from collections.abc import Iterator

    import numpy.typing as npt

    from .state import StateArray

SamplingAlignment = Literal["exact", "nearest"]

_ALIGNMENTS: tuple[str, ...] = ("exact", "nearest")

_UNKNOWN_ALIGNMENT_ERROR = "Unknown alignment: {alignment}; expected one of {allowed}"
_INTERVAL_TOO_SMALL_ERROR = (
    "Sampling interval {interval!r} is smaller than the scheme step size {dt!r}"
)
_NEGATIVE_TAKE_ERROR = "take(n) requires n >= 0; got {n!r}"
_NSTEP_COUNT_ERROR = "NStep requires an integer n >= 1; got {n!r}"
_NSTEP_SCHEME_ERROR = "NStep wraps fixed-step schemes only; got {scheme!r}"

# Output times closer than this many ulps to the current time count as reached.
_TIME_ULPS = 64.0


@dataclass(frozen=True, slots=True)
class SamplingConfig:
    """Fixed-interval output sampling.

    Attributes:
        interval: Spacing between output times; must be >= the scheme dt.
        alignment: "exact" or "nearest".
    """

    interval: float
    alignment: SamplingAlignment = "exact"

    def __post_init__(self) -> None:
        """Validate interval and alignment.

        Raises:
            ConfigurationError: If interval is not positive or the alignment
                is unknown.
        """
        check_step_size(self.interval, name="interval")
        if self.alignment not in _ALIGNMENTS:
            raise ConfigurationError(
                _UNKNOWN_ALIGNMENT_ERROR.format(
                    alignment=self.alignment, allowed=_ALIGNMENTS
                )
            )


class TimeSeries:
    """Pull-based iterator of ``(t, state)`` pairs along one trajectory."""

    def __init__(
        self,
        scheme: Scheme,
        x0: npt.ArrayLike,
        *,
        t0: float = 0.0,
        sampling: SamplingConfig | None = None,
        check_finite: bool = True,
    ) -> None:
        """
        Initialize TimeSeries.

        Args:
            scheme: Scheme used to commit steps; owned by this run.
            x0: Initial state (copied).
            t0: Initial time, also the origin of the output-time grid.
            sampling: Optional fixed-interval sampling.
            check_finite: Raise ArithmeticAnomalyError on a non-finite
                committed state.

        Raises:
            ConfigurationError: If x0 does not match the scheme prototype or
                the sampling interval is smaller than a fixed scheme dt.
        """
        self.scheme = scheme
        self.sampling = sampling
        self.check_finite = bool(check_finite)

        if sampling is not None and not scheme.adaptive and sampling.interval < scheme.dt:
            raise ConfigurationError(
                _INTERVAL_TOO_SMALL_ERROR.format(
                    interval=sampling.interval, dt=scheme.dt
                )
            )

        self._t = float(t0)
        self._x = scheme.spec.coerce(x0, name="x0")
        self._other = scheme.spec.zeros()
        self._prev_t: float | None = None

        self._origin = self._t
        self._index = 0

    @classmethod
    def from_checkpoint(
        cls,
        scheme: Scheme,
        checkpoint: Checkpoint,
        *,
        sampling: SamplingConfig | None = None,
        check_finite: bool = True,
    ) -> TimeSeries:
        """
        Build a fresh producer continuing from a checkpoint.

        The adaptive step size and the sampling grid recorded in the
        checkpoint are restored, so the new producer yields the same
        continuation the original would have.

        Args:
            scheme: Scheme for the new run.
            checkpoint: Snapshot returned by checkpoint().
            sampling: Optional fixed-interval sampling.
            check_finite: See __init__.

        Returns:
            New TimeSeries positioned at the checkpoint.
        """
        if scheme.adaptive and checkpoint.dt is not None:
            scheme.dt = checkpoint.dt  # type: ignore[misc]
        series = cls(
            scheme,
            checkpoint.state,
            t0=checkpoint.t,
            sampling=sampling,
            check_finite=check_finite,
        )
        if sampling is not None and checkpoint.sample_origin is not None:
            series._origin = checkpoint.sample_origin
            series._index = checkpoint.sample_index
        return series

    @property
    def t(self) -> float:
        """Time of the latest committed state."""
        return self._t

    @property
    def state(self) -> StateArray:
        """Read-only view of the latest committed state."""
        view = self._x.view()
        view.setflags(write=False)
        return view

    def checkpoint(self) -> Checkpoint:
        """Snapshot the latest committed state for a later restart."""
        return Checkpoint.capture(
            self._t,
            self._x,
            self.scheme.dt if self.scheme.adaptive else None,
            sample_origin=self._origin if self.sampling is not None else None,
            sample_index=self._index,
        )

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[tuple[float, StateArray]]:
        return self

    def __next__(self) -> tuple[float, StateArray]:
        if self.sampling is None:
            self._commit(None)
            return self._t, self._x.copy()
        if self.sampling.alignment == "exact":
            return self._next_exact()
        return self._next_nearest()

    def take(self, n: int) -> tuple[npt.NDArray[np.float64], StateArray]:
        """
        Collect the next n pairs.

        Args:
            n: Number of pairs.

        Raises:
            ConfigurationError: If n is negative.

        Returns:
            (times, states) with shapes (n,) and (n, *state_shape).
        """
        if n < 0:
            raise ConfigurationError(_NEGATIVE_TAKE_ERROR.format(n=n))
        spec = self.scheme.spec
        times = np.empty(n, dtype=np.float64)
        states = np.empty((n, *spec.shape), dtype=spec.dtype)
        for i in range(n):
            times[i], states[i] = next(self)
        return times, cast("StateArray", states)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, dt_limit: float | None) -> StepResult:
        res = self.scheme.step(self._x, self._t, dt_limit=dt_limit, out=self._other)
        if self.check_finite:
            bad = count_non_finite(res.state)
            if bad:
                raise_non_finite_state(t=res.t, count=bad)

        self._prev_t = self._t
        self._x, self._other = self._other, self._x
        self._t = res.t
        return res

    def _target(self) -> float:
        interval = cast("SamplingConfig", self.sampling).interval
        return self._origin + (self._index + 1) * interval

    def _time_tolerance(self, target: float) -> float:
        interval = cast("SamplingConfig", self.sampling).interval
        return _TIME_ULPS * float(np.finfo(np.float64).eps) * max(abs(target), interval)

    def _next_exact(self) -> tuple[float, StateArray]:
        target = self._target()
        tol = self._time_tolerance(target)
        while target - self._t > tol:
            remaining = target - self._t
            res = self._commit(remaining)
            if res.dt >= remaining:
                break
        self._t = target
        self._index += 1
        return target, self._x.copy()

    def _next_nearest(self) -> tuple[float, StateArray]:
        interval = cast("SamplingConfig", self.sampling).interval
        target = self._target()
        tol = self._time_tolerance(target)
        # No committed step spans more than one interval, so every output
        # time gets at least one new step and emitted times strictly increase.
        while target - self._t > tol:
            self._commit(interval)
        self._index += 1

        # _other holds the previously committed state until the next commit.
        if self._prev_t is not None and (target - self._prev_t) < (self._t - target):
            return self._prev_t, self._other.copy()
        return self._t, self._x.copy()


def time_series(
    x0: npt.ArrayLike,
    scheme: Scheme,
    *,
    t0: float = 0.0,
    sampling: SamplingConfig | None = None,
    check_finite: bool = True,
) -> TimeSeries:
    """
    Create a TimeSeries starting at (x0, t0).

    Args:
        x0: Initial state (copied).
        scheme: Scheme used to commit steps.
        t0: Initial time.
        sampling: Optional fixed-interval sampling.
        check_finite: Raise on non-finite committed states.

    Returns:
        TimeSeries iterator.
    """
    return TimeSeries(scheme, x0, t0=t0, sampling=sampling, check_finite=check_finite)


class NStep(FixedStepScheme):
    """Fixed-step scheme performing n inner steps per step (dt = n * inner dt)."""

    def __init__(self, scheme: FixedStepScheme, n: int) -> None:
        """
        Initialize NStep.

        Args:
            scheme: Inner fixed-step scheme; its buffers and stats are shared.
            n: Inner steps per step.

        Raises:
            ConfigurationError: If scheme is adaptive or n is not an int >= 1.
        """
        if not isinstance(scheme, FixedStepScheme) or scheme.adaptive:
            raise ConfigurationError(_NSTEP_SCHEME_ERROR.format(scheme=scheme))
        if isinstance(n, bool) or not isinstance(n, int | np.integer) or n < 1:
            raise ConfigurationError(_NSTEP_COUNT_ERROR.format(n=n))

        self.inner = scheme
        self.n = int(n)
        self.name = f"{scheme.name}x{self.n}"  # type: ignore[misc]
        self.order = scheme.order  # type: ignore[misc]
        self.model = scheme.model
        self.spec = scheme.spec
        self.stats = scheme.stats
        self._dt = self.n * scheme.dt
        self._work = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Apply n inner steps of size dt / n."""
        x = self._check_state(state)
        h = self._resolve_dt(dt) / self.n
        y = self._resolve_out(out)

        np.copyto(self._work, x, casting="same_kind")
        for i in range(self.n):
            self.inner.advance(self._work, t + i * h, h, out=self._work)
        np.copyto(y, self._work)
        return y
