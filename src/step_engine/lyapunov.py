# step_engine/src/step_engine/lyapunov.py
"""
Lyapunov analysis of a fixed-step one-step map.

The map is x -> scheme.iterate(x, t) for a fixed-step scheme over a 1-D real
state. Its Jacobian is never formed explicitly; Jacobian.dot differentiates
the map numerically along the requested directions.

- exponents(): Lyapunov spectrum from repeated QR decompositions of the
  tangent dynamics.
- clv(): covariant Lyapunov vectors from a forward QR pass followed by a
  backward pass of upper-triangular solves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import qr, solve_triangular

from .errors import ConfigurationError
from .scheme import FixedStepScheme

if TYPE_CHECKING:
    import numpy.typing as npt

_FIXED_STEP_ERROR = "Lyapunov analysis needs a fixed-step scheme; got {scheme!r}"
_STATE_RANK_ERROR = "Lyapunov analysis needs a 1-D real state; got shape {shape}, dtype {dtype}"
_DIRECTION_RANK_ERROR = "Jacobian.dot expects a 1-D or 2-D array; got ndim={ndim}"
_DURATION_ERROR = "duration must be an integer >= 1; got {duration!r}"

FloatArray = NDArray[np.float64]


def _require_fixed_real_1d(scheme: object) -> FixedStepScheme:
    if not isinstance(scheme, FixedStepScheme):
        raise ConfigurationError(_FIXED_STEP_ERROR.format(scheme=scheme))
    spec = scheme.spec
    if spec.ndim != 1 or np.issubdtype(spec.dtype, np.complexfloating):
        raise ConfigurationError(
            _STATE_RANK_ERROR.format(shape=spec.shape, dtype=spec.dtype)
        )
    return scheme


def _check_duration(duration: int) -> int:
    if isinstance(duration, bool) or int(duration) != duration or duration < 1:
        raise ConfigurationError(_DURATION_ERROR.format(duration=duration))
    return int(duration)


class Jacobian:
    """Finite-difference Jacobian of a one-step map at a point.

    Attributes:
        scheme: Fixed-step scheme defining the map.
        x: Linearization point.
        fx: Image of x under the map.
        alpha: Relative size of the difference step.
        t: Time at which the map is applied.
    """

    def __init__(
        self,
        scheme: FixedStepScheme,
        x: npt.ArrayLike,
        alpha: float,
        t: float = 0.0,
    ) -> None:
        self.scheme = _require_fixed_real_1d(scheme)
        self.x = np.array(x, dtype=np.float64)
        self.alpha = float(alpha)
        self.t = float(t)
        self.fx = np.asarray(self.scheme.iterate(self.x, self.t), dtype=np.float64)

    def _dot_vector(self, dx: FloatArray) -> FloatArray:
        nrm = max(float(np.linalg.norm(self.x)), float(np.linalg.norm(dx)))
        n = self.alpha / nrm
        shifted = self.x + n * dx
        return cast("FloatArray", (self.scheme.iterate(shifted, self.t) - self.fx) / n)

    def dot(self, v: npt.ArrayLike) -> FloatArray:
        """
        Apply the Jacobian to a direction or to each column of a matrix.

        Args:
            v: Direction of shape (n,) or directions of shape (n, k).

        Raises:
            ConfigurationError: If v has another rank.

        Returns:
            J v with the shape of v.
        """
        arr = np.asarray(v, dtype=np.float64)
        if arr.ndim == 1:
            return self._dot_vector(arr)
        if arr.ndim == 2:
            return np.column_stack([self._dot_vector(col) for col in arr.T])
        raise ConfigurationError(_DIRECTION_RANK_ERROR.format(ndim=arr.ndim))


def _qr_series(
    scheme: FixedStepScheme,
    x0: npt.ArrayLike,
    alpha: float,
    t0: float,
) -> Any:
    """Yield (x, q, r) along the trajectory; q is the frame before the step."""
    x = np.array(x0, dtype=np.float64)
    t = float(t0)
    q = np.eye(x.size)
    while True:
        jac = Jacobian(scheme, x, alpha, t)
        q_next, r = qr(jac.dot(q))
        yield x, q, r
        x = jac.fx
        q = q_next
        t += scheme.dt


def exponents(
    scheme: FixedStepScheme,
    x0: npt.ArrayLike,
    alpha: float,
    duration: int,
    *,
    t0: float = 0.0,
) -> FloatArray:
    """
    Compute the full Lyapunov spectrum.

    The first duration // 10 steps are discarded as transient, then
    log|diag(R)| is averaged over duration steps.

    Args:
        scheme: Fixed-step scheme over a 1-D real state.
        x0: Initial state.
        alpha: Relative finite-difference step.
        duration: Number of averaged steps.
        t0: Initial time.

    Raises:
        ConfigurationError: If the scheme/state is unsupported or duration < 1.

    Returns:
        Exponents, one per state component, in QR order.
    """
    scheme = _require_fixed_real_1d(scheme)
    duration = _check_duration(duration)
    skip = duration // 10

    total = np.zeros(scheme.spec.size)
    for i, (_, _, r) in enumerate(_qr_series(scheme, x0, alpha, t0)):
        if i >= skip + duration:
            break
        if i >= skip:
            total += np.log(np.abs(np.diag(r)))
    return cast("FloatArray", total / (scheme.dt * duration))


def _clv_backward(c: FloatArray, r: FloatArray) -> tuple[FloatArray, FloatArray]:
    cd = solve_triangular(r, c, lower=False)
    norms = np.linalg.norm(cd, axis=0)
    return cd / norms, 1.0 / norms


def clv(
    scheme: FixedStepScheme,
    x0: npt.ArrayLike,
    alpha: float,
    duration: int,
    *,
    t0: float = 0.0,
) -> list[tuple[FloatArray, FloatArray, FloatArray]]:
    """
    Compute covariant Lyapunov vectors along a trajectory.

    Every Q and R of the forward pass is stored, so memory grows linearly
    with duration.

    Args:
        scheme: Fixed-step scheme over a 1-D real state.
        x0: Initial state.
        alpha: Relative finite-difference step.
        duration: Number of returned points.
        t0: Initial time.

    Raises:
        ConfigurationError: If the scheme/state is unsupported or duration < 1.

    Returns:
        List of (x, V, f) with V's columns the unit CLVs at x and f the
        local expansion factors.
    """
    scheme = _require_fixed_real_1d(scheme)
    duration = _check_duration(duration)
    skip = duration // 10

    forward: list[tuple[FloatArray, FloatArray, FloatArray]] = []
    for i, item in enumerate(_qr_series(scheme, x0, alpha, t0)):
        if i >= 2 * skip + duration:
            break
        if i >= skip:
            forward.append(item)

    n = scheme.spec.size
    c = np.eye(n)
    backward: list[tuple[FloatArray, FloatArray, FloatArray]] = []
    for x, q, r in reversed(forward):
        c, f = _clv_backward(c, r)
        backward.append((x, q @ c, f))

    return backward[skip:][::-1]
