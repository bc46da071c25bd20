# step_engine/src/step_engine/adaptive.py
"""Embedded Runge-Kutta pairs with adaptive step-size control.

An embedded pair shares its stage evaluations between a solution of order
``p + 1`` (committed) and one of order ``p`` (used only for the error
estimate). Per attempted step of size h from (x, t):

1. Compute the stages k_i once.
2. y_hi = x + h sum(b_hi_i k_i), err = h sum((b_hi_i - b_lo_i) k_i).
3. e = norm(err), tol = atol + rtol * max(norm(x), norm(y_hi)).
4. Accept iff e <= tol (equality accepts). A rejected attempt leaves the
   caller's state and time untouched.
5. dt_next = h * clamp(safety * (tol / e) ** (1 / (p + 1)), min_factor, max_factor)
   on accept and on reject, then bounded to [dt_min, dt_max].

``e == 0`` is replaced by the smallest positive normal float before the ratio,
so a perfect step grows dt by max_factor. A non-finite error is a rejection
with factor min_factor.

Consecutive rejections are capped by ``max_rejections``; reaching the cap
raises NumericalInstabilityError instead of shrinking dt forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from .errors import (
    ConfigurationError,
    raise_dt_underflow,
    raise_too_many_rejections,
)
from .scheme import Scheme, StepResult, check_step_size
from .state import NormName, resolve_norm

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy.typing as npt

    from .model import Model
    from .state import StateArray

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_TOLERANCE_ERROR_MSG = (
    "Invalid tolerances: rtol={rtol!r}, atol={atol!r}; both must be >= 0 and "
    "not both zero"
)
_SAFETY_ERROR_MSG = "safety must be in (0, 1]; got {safety!r}"
_FACTOR_ERROR_MSG = (
    "Step factors must satisfy 0 < min_factor <= 1 <= max_factor; "
    "got min_factor={min_factor!r}, max_factor={max_factor!r}"
)
_MAX_REJECTIONS_ERROR_MSG = "max_rejections must be an integer >= 1; got {value!r}"
_DT_BOUNDS_ERROR_MSG = (
    "dt bounds must satisfy 0 <= dt_min < dt_max; got dt_min={dt_min!r}, "
    "dt_max={dt_max!r}"
)
_UNKNOWN_TABLEAU_ERROR_MSG = "Unknown tableau: {name}; expected one of {allowed}"
_TABLEAU_SHAPE_ERROR_MSG = "Tableau {name} is malformed: {detail}"

# Stand-in for a zero error estimate in the step-size ratio.
_TINY_ERROR = float(np.finfo(np.float64).tiny)


# =============================================================================
# Butcher tableaus
# =============================================================================


@dataclass(frozen=True, slots=True)
class ButcherTableau:
    """Explicit embedded Runge-Kutta pair.

    Attributes:
        name: Tableau name.
        c: Stage nodes, length s.
        a: Strictly lower-triangular coefficients; row i holds i entries.
        b_high: Weights of the committed order p + 1 solution.
        b_low: Weights of the embedded order p solution.
        order: Lower order p of the pair.
    """

    name: str
    c: tuple[float, ...]
    a: tuple[tuple[float, ...], ...]
    b_high: tuple[float, ...]
    b_low: tuple[float, ...]
    order: int
    b_error: tuple[float, ...] = field(init=False)

    def __post_init__(self) -> None:
        """Validate shapes and precompute the error weights."""
        s = len(self.c)
        if len(self.a) != s or any(len(row) != i for i, row in enumerate(self.a)):
            raise ConfigurationError(
                _TABLEAU_SHAPE_ERROR_MSG.format(
                    name=self.name, detail="a must be strictly lower-triangular"
                )
            )
        if len(self.b_high) != s or len(self.b_low) != s:
            raise ConfigurationError(
                _TABLEAU_SHAPE_ERROR_MSG.format(
                    name=self.name, detail="b_high/b_low must have one weight per stage"
                )
            )
        object.__setattr__(
            self,
            "b_error",
            tuple(hi - lo for hi, lo in zip(self.b_high, self.b_low, strict=True)),
        )

    @property
    def stages(self) -> int:
        """Number of stages s."""
        return len(self.c)


HEUN_EULER = ButcherTableau(
    name="heun-euler",
    c=(0.0, 1.0),
    a=((), (1.0,)),
    b_high=(0.5, 0.5),
    b_low=(1.0, 0.0),
    order=1,
)

BOGACKI_SHAMPINE = ButcherTableau(
    name="bogacki-shampine",
    c=(0.0, 1 / 2, 3 / 4, 1.0),
    a=(
        (),
        (1 / 2,),
        (0.0, 3 / 4),
        (2 / 9, 1 / 3, 4 / 9),
    ),
    b_high=(2 / 9, 1 / 3, 4 / 9, 0.0),
    b_low=(7 / 24, 1 / 4, 1 / 3, 1 / 8),
    order=2,
)

CASH_KARP = ButcherTableau(
    name="cash-karp",
    c=(0.0, 1 / 5, 3 / 10, 3 / 5, 1.0, 7 / 8),
    a=(
        (),
        (1 / 5,),
        (3 / 40, 9 / 40),
        (3 / 10, -9 / 10, 6 / 5),
        (-11 / 54, 5 / 2, -70 / 27, 35 / 27),
        (1631 / 55296, 175 / 512, 575 / 13824, 44275 / 110592, 253 / 4096),
    ),
    b_high=(37 / 378, 0.0, 250 / 621, 125 / 594, 0.0, 512 / 1771),
    b_low=(2825 / 27648, 0.0, 18575 / 48384, 13525 / 55296, 277 / 14336, 1 / 4),
    order=4,
)

DORMAND_PRINCE = ButcherTableau(
    name="dormand-prince",
    c=(0.0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1.0, 1.0),
    a=(
        (),
        (1 / 5,),
        (3 / 40, 9 / 40),
        (44 / 45, -56 / 15, 32 / 9),
        (19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729),
        (9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656),
        (35 / 384, 0.0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84),
    ),
    b_high=(35 / 384, 0.0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84, 0.0),
    b_low=(
        5179 / 57600,
        0.0,
        7571 / 16695,
        393 / 640,
        -92097 / 339200,
        187 / 2100,
        1 / 40,
    ),
    order=4,
)

TABLEAUS: dict[str, ButcherTableau] = {
    tab.name: tab for tab in (HEUN_EULER, BOGACKI_SHAMPINE, CASH_KARP, DORMAND_PRINCE)
}


def resolve_tableau(tableau: str | ButcherTableau) -> ButcherTableau:
    """
    Resolve a tableau name (or pass through a tableau instance).

    Args:
        tableau: Tableau name or ButcherTableau.

    Raises:
        ConfigurationError: If the name is unknown.

    Returns:
        ButcherTableau instance.
    """
    if isinstance(tableau, ButcherTableau):
        return tableau
    name = str(tableau).strip().lower()
    try:
        return TABLEAUS[name]
    except KeyError as exc:
        raise ConfigurationError(
            _UNKNOWN_TABLEAU_ERROR_MSG.format(name=tableau, allowed=sorted(TABLEAUS))
        ) from exc


# =============================================================================
# Configuration
# =============================================================================


@dataclass(slots=True, frozen=True)
class AdaptiveConfig:
    """Configuration for adaptive stepping.

    Attributes:
        initial_dt: Initial step size guess.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        safety: Safety factor applied to dt updates.
        min_factor: Minimum multiplicative change factor.
        max_factor: Maximum multiplicative change factor.
        max_rejections: Consecutive rejections allowed before failing.
        dt_min: Minimum allowed dt (0 only guards against dt reaching zero).
        dt_max: Maximum allowed dt.
        norm: Norm used for the error and the tolerance scale.
    """

    initial_dt: float = 1e-2
    rtol: float = 1e-6
    atol: float = 1e-9
    safety: float = 0.9
    min_factor: float = 0.2
    max_factor: float = 5.0
    max_rejections: int = 25
    dt_min: float = 0.0
    dt_max: float = float("inf")
    norm: NormName = "rms"

    def __post_init__(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If any parameter is out of range.
        """
        check_step_size(self.initial_dt, name="initial_dt")

        rtol = float(self.rtol)
        atol = float(self.atol)
        if not (rtol >= 0.0 and atol >= 0.0) or (rtol <= 0.0 and atol == 0.0):
            raise ConfigurationError(_TOLERANCE_ERROR_MSG.format(rtol=rtol, atol=atol))

        if not (0.0 < float(self.safety) <= 1.0):
            raise ConfigurationError(_SAFETY_ERROR_MSG.format(safety=self.safety))

        if not (0.0 < float(self.min_factor) <= 1.0 <= float(self.max_factor)):
            raise ConfigurationError(
                _FACTOR_ERROR_MSG.format(
                    min_factor=self.min_factor, max_factor=self.max_factor
                )
            )

        max_rej = self.max_rejections
        if isinstance(max_rej, bool) or int(max_rej) != max_rej or max_rej < 1:
            raise ConfigurationError(
                _MAX_REJECTIONS_ERROR_MSG.format(value=self.max_rejections)
            )

        if not (0.0 <= float(self.dt_min) < float(self.dt_max)):
            raise ConfigurationError(
                _DT_BOUNDS_ERROR_MSG.format(dt_min=self.dt_min, dt_max=self.dt_max)
            )

        resolve_norm(self.norm)


# =============================================================================
# Attempt result
# =============================================================================


@dataclass(frozen=True, slots=True)
class StepAttempt:
    """Outcome of a single attempted adaptive step.

    Attributes:
        accepted: Whether the attempt was committed.
        t: Start time of the attempt (unchanged by rejection).
        dt: Step size attempted.
        dt_next: Step size proposed by the controller.
        factor: Clamped multiplicative factor, dt_next / dt before dt bounds.
        error: Error estimate e.
        tolerance: Tolerance tol the error was compared against.
        state: New state when accepted, None when rejected.
    """

    accepted: bool
    t: float
    dt: float
    dt_next: float
    factor: float
    error: float
    tolerance: float
    state: StateArray | None = field(default=None, repr=False)


# =============================================================================
# Embedded RK scheme
# =============================================================================


class EmbeddedRK(Scheme):
    """Adaptive explicit Runge-Kutta scheme driven by an embedded pair."""

    name = "embedded-rk"
    adaptive = True

    def __init__(
        self,
        model: Model,
        prototype: npt.ArrayLike,
        config: AdaptiveConfig | None = None,
        *,
        tableau: str | ButcherTableau = "dormand-prince",
    ) -> None:
        """
        Initialize EmbeddedRK.

        Args:
            model: Model providing field(x, t).
            prototype: Prototype state sizing the scratch buffers.
            config: Adaptive configuration; defaults to AdaptiveConfig().
            tableau: Tableau name or instance.
        """
        self.config = config or AdaptiveConfig()
        super().__init__(model, prototype, dt=self.config.initial_dt)

        self.tableau = resolve_tableau(tableau)
        self.order = self.tableau.order
        self._norm = resolve_norm(self.config.norm)
        self._dt = min(self._dt, float(self.config.dt_max))

        # Stage buffers
        self._k = [self._buffer() for _ in range(self.tableau.stages)]
        self._stage = self._buffer()
        self._tmp = self._buffer()

        # Candidate solution / error buffers
        self._y_high = self._buffer()
        self._err = self._buffer()

    @property
    def dt(self) -> float:
        """Current controller step size."""
        return self._dt

    @dt.setter
    def dt(self, value: float) -> None:
        self._dt = min(check_step_size(value), float(self.config.dt_max))

    # ------------------------------------------------------------------
    # Kernels
    # ------------------------------------------------------------------

    def _combine(
        self,
        out: StateArray,
        base: StateArray | None,
        weights: Sequence[float],
        h: float,
    ) -> None:
        """Compute out = base + h * sum(w_j k_j), skipping zero weights."""
        if base is None:
            out.fill(0)
        else:
            np.copyto(out, base, casting="same_kind")
        for w, k in zip(weights, self._k, strict=False):
            if w == 0.0:
                continue
            np.multiply(k, h * w, out=self._tmp)
            out += self._tmp

    def _compute_stages(self, x: StateArray, t: float, h: float) -> None:
        tab = self.tableau
        for i in range(tab.stages):
            if i == 0:
                self._field_into(self._k[0], x, t)
                continue
            self._combine(self._stage, x, tab.a[i], h)
            self._field_into(self._k[i], self._stage, t + tab.c[i] * h)

    def _propose_factor(self, error: float, tolerance: float) -> float:
        """Return the clamped dt multiplier for an error/tolerance pair."""
        cfg = self.config
        if not np.isfinite(error):
            return float(cfg.min_factor)
        if error == 0.0:
            return float(cfg.max_factor)
        e = max(error, _TINY_ERROR)
        exp = 1.0 / float(self.order + 1)
        fac = float(cfg.safety) * (tolerance / e) ** exp
        return min(float(cfg.max_factor), max(float(cfg.min_factor), fac))

    def _bound_dt(self, dt: float) -> float:
        cfg = self.config
        return min(float(cfg.dt_max), max(float(cfg.dt_min), dt))

    def attempt(
        self,
        state: npt.ArrayLike,
        t: float,
        *,
        dt_limit: float | None = None,
        out: StateArray | None = None,
    ) -> StepAttempt:
        """
        Attempt one step with the controller's current dt.

        The controller dt is updated on accept and on reject. When the attempt
        was shortened by dt_limit and accepted, the controller keeps its
        pre-limit dt (or the proposal, if larger) for the next step.

        Args:
            state: Current state (never mutated unless passed as out).
            t: Current time.
            dt_limit: Optional upper bound on the attempted step size.
            out: Optional buffer receiving the new state on acceptance.

        Raises:
            NumericalInstabilityError: If the next dt would not be positive,
                or a rejection drives it to dt_min or below.

        Returns:
            StepAttempt describing the outcome.
        """
        x = self._check_state(state)
        h_ctrl = self._dt
        h = self._limited_dt(dt_limit)

        self._compute_stages(x, t, h)
        self._combine(self._y_high, x, self.tableau.b_high, h)
        self._combine(self._err, None, self.tableau.b_error, h)

        error = self._norm(self._err)
        if not np.isfinite(error):
            error = float("inf")
        tolerance = float(self.config.atol) + float(self.config.rtol) * max(
            self._norm(x), self._norm(self._y_high)
        )

        factor = self._propose_factor(error, tolerance)
        dt_next = self._bound_dt(h * factor)
        accepted = error <= tolerance

        if not accepted:
            self.stats.n_rejected += 1
            logger.debug(
                "rejected step at t=%r: dt=%r error=%r tol=%r -> dt_next=%r",
                t,
                h,
                error,
                tolerance,
                dt_next,
            )
            if not dt_next > 0.0 or (
                self.config.dt_min > 0.0 and dt_next <= self.config.dt_min
            ):
                raise_dt_underflow(t=float(t), dt=h * factor, dt_min=self.config.dt_min)
            self._dt = dt_next
            return StepAttempt(
                accepted=False,
                t=float(t),
                dt=h,
                dt_next=dt_next,
                factor=factor,
                error=error,
                tolerance=tolerance,
            )

        new_dt = max(dt_next, h_ctrl) if h < h_ctrl else dt_next
        if not new_dt > 0.0:
            raise_dt_underflow(t=float(t), dt=new_dt, dt_min=self.config.dt_min)

        y = self._resolve_out(out)
        np.copyto(y, self._y_high, casting="same_kind")
        self.stats.n_steps += 1
        self._dt = new_dt
        return StepAttempt(
            accepted=True,
            t=float(t),
            dt=h,
            dt_next=dt_next,
            factor=factor,
            error=error,
            tolerance=tolerance,
            state=y,
        )

    def step(
        self,
        state: npt.ArrayLike,
        t: float,
        *,
        dt_limit: float | None = None,
        out: StateArray | None = None,
    ) -> StepResult:
        """
        Retry attempts until one is accepted.

        Args:
            state: Current state (never mutated unless passed as out).
            t: Current time.
            dt_limit: Optional upper bound on the step size.
            out: Optional buffer receiving the new state.

        Raises:
            NumericalInstabilityError: If max_rejections consecutive attempts
                are rejected or dt underflows dt_min.

        Returns:
            StepResult of the accepted attempt.
        """
        rejections = 0
        while True:
            att = self.attempt(state, t, dt_limit=dt_limit, out=out)
            if att.accepted and att.state is not None:
                return StepResult(
                    t=float(t) + att.dt,
                    dt=att.dt,
                    state=att.state,
                    error=att.error,
                    tolerance=att.tolerance,
                    rejections=rejections,
                )

            rejections += 1
            if rejections >= self.config.max_rejections:
                raise_too_many_rejections(
                    t=float(t),
                    rejections=rejections,
                    limit=self.config.max_rejections,
                    dt=att.dt,
                    error=att.error,
                    tolerance=att.tolerance,
                )
