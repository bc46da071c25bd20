# tests/test_semi_implicit.py
"""Tests for step_engine.semi_implicit.

Coverage in this file:
1) With N = 0 both schemes return exactly E(h) x (diagonal, dense, sparse).
2) Semi-implicit Euler with the exponential propagator is exact for a
   constant forcing.
3) Lawson RK4 converges at fourth order on a mildly nonlinear split system.
4) Stiff linear parts stay stable at step sizes far beyond the explicit limit.
5) Propagator caching, revision-based invalidation and explicit invalidation.
6) Construction failures raise PropagatorError / ConfigurationError.
"""

from __future__ import annotations

import logging

import numpy as np
import pytest
from scipy.linalg import expm

from step_engine.errors import ConfigurationError, PropagatorError
from step_engine.explicit import RK4
from step_engine.matrix_ops import build_laplacian_tridiag
from step_engine.model import FunctionModel, SplitModel
from step_engine.semi_implicit import SemiImplicitEuler, SemiImplicitRK4
from step_engine.time_series import SamplingConfig, TimeSeries

SCHEMES = [SemiImplicitEuler, SemiImplicitRK4]


def _run(scheme: SemiImplicitEuler | SemiImplicitRK4, x0: np.ndarray, n: int) -> np.ndarray:
    x = np.array(x0, copy=True)
    t = 0.0
    for _ in range(n):
        x = scheme.advance(x, t)
        t += scheme.dt
    return x


# -----------------------------------------------------------------------------
# Pure linear systems
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("scheme_cls", SCHEMES)
def test_zero_nonlinear_diagonal_equals_exponential(scheme_cls: type) -> None:
    """With N = 0 the update is exactly exp(h L) x."""
    lam = np.array([-1.0, -30.0, 0.5, 0.0])
    x = np.array([1.0, 2.0, -1.0, 3.0])
    h = 0.2
    scheme = scheme_cls(SplitModel(lam), x, dt=h)
    assert np.array_equal(scheme.advance(x, 0.0), np.exp(h * lam) * x)


@pytest.mark.parametrize("scheme_cls", SCHEMES)
def test_zero_nonlinear_dense_equals_expm(scheme_cls: type) -> None:
    """With N = 0 and a dense L the update matches expm(h L) x."""
    a = np.array([[-2.0, 1.0, 0.0], [0.3, -1.0, 0.5], [0.0, 0.2, -4.0]])
    x = np.array([1.0, -1.0, 2.0])
    h = 0.1
    scheme = scheme_cls(SplitModel(a), x, dt=h)
    assert np.allclose(scheme.advance(x, 0.0), expm(h * a) @ x, rtol=1e-12)


@pytest.mark.parametrize("scheme_cls", SCHEMES)
def test_zero_nonlinear_sparse_resolvent_equals_inverse(scheme_cls: type) -> None:
    """With N = 0 and the resolvent propagator the update is (I - hL)^-1 x."""
    lap = build_laplacian_tridiag(10, 0.1, 1.0, bc="dirichlet")
    x = np.sin(np.linspace(0.0, np.pi, 10))
    h = 0.05
    scheme = scheme_cls(SplitModel(lap), x, dt=h, propagator="resolvent")
    expected = np.linalg.solve(np.eye(10) - h * lap.toarray(), x)
    assert np.allclose(scheme.advance(x, 0.0), expected, rtol=1e-12)


def test_operator_axis_batches_rows() -> None:
    """A dense L along axis 1 propagates every row independently."""
    a = np.array([[-1.0, 0.5], [0.5, -2.0]])
    x = np.arange(1.0, 7.0).reshape(3, 2)
    h = 0.3
    scheme = SemiImplicitEuler(SplitModel(a), x, dt=h, operator_axis=1)
    expected = x @ expm(h * a).T
    assert np.allclose(scheme.advance(x, 0.0), expected)


def test_model_operator_axis_is_default() -> None:
    """The model's operator_axis is used when none is given."""
    a = np.array([[-1.0, 0.5], [0.5, -2.0]])
    x = np.ones((3, 2))
    scheme = SemiImplicitRK4(SplitModel(a, operator_axis=1), x, dt=0.1)
    assert scheme.operator_axis == 1


def test_complex_spectral_diagonal() -> None:
    """Complex diagonal operators advance complex spectral states."""
    k = np.fft.fftfreq(8, d=1.0 / 8)
    lam = -(k**2) + 1j * k
    x = np.exp(1j * k)
    h = 0.01
    scheme = SemiImplicitRK4(SplitModel(lam), x, dt=h)
    assert np.allclose(_run(scheme, x, 10), np.exp(10 * h * lam) * x)


# -----------------------------------------------------------------------------
# Accuracy / stability
# -----------------------------------------------------------------------------


def test_euler_exact_for_constant_forcing() -> None:
    """x' = lam x + c is integrated exactly by the exponential Euler scheme."""
    lam = np.array([-3.0, -0.5])
    c = np.array([2.0, -1.0])
    x0 = np.array([1.0, 1.0])
    h = 0.25
    scheme = SemiImplicitEuler(SplitModel(lam, lambda x, t: c), x0, dt=h)  # noqa: ARG005

    t_end = 8 * h
    expected = np.exp(lam * t_end) * x0 + c * np.expm1(lam * t_end) / lam
    assert np.allclose(_run(scheme, x0, 8), expected, rtol=1e-12)


def test_lawson_rk4_is_fourth_order() -> None:
    """Halving dt cuts the error of Lawson RK4 by about 16."""
    lam = np.array([-1.0, -5.0])
    model = SplitModel(lam, lambda x, t: np.sin(x) + np.cos(t))
    x0 = np.array([0.5, -0.3])

    ref = _run(SemiImplicitRK4(model, x0, dt=1.0 / 256), x0, 256)
    e1 = np.max(np.abs(_run(SemiImplicitRK4(model, x0, dt=1.0 / 8), x0, 8) - ref))
    e2 = np.max(np.abs(_run(SemiImplicitRK4(model, x0, dt=1.0 / 16), x0, 16) - ref))
    assert np.log2(e1 / e2) == pytest.approx(4.0, abs=0.4)


@pytest.mark.parametrize("scheme_cls", SCHEMES)
def test_stiff_linear_part_is_stable(diagonal_split_model: SplitModel, scheme_cls: type) -> None:
    """dt = 0.1 with L down to -1000 stays bounded and decays."""
    x0 = np.ones(4)
    scheme = scheme_cls(diagonal_split_model, x0, dt=0.1)
    x = _run(scheme, x0, 50)
    assert np.all(np.isfinite(x))
    assert np.all(np.abs(x) < 1e-2)


def test_explicit_rk4_is_unstable_on_same_problem(diagonal_split_model: SplitModel) -> None:
    """The same step size blows up an explicit scheme."""
    x0 = np.ones(4)
    scheme = RK4(diagonal_split_model, x0, dt=0.1)
    x = x0
    with np.errstate(over="ignore", invalid="ignore"):
        for _ in range(20):
            x = scheme.advance(x, 0.0)
    assert not np.all(np.abs(x) < 1e3)


# -----------------------------------------------------------------------------
# Propagator cache
# -----------------------------------------------------------------------------


def test_propagators_built_at_construction_and_reused() -> None:
    """dt (and dt/2 for RK4) propagators are built once and reused."""
    lam = np.array([-1.0, -2.0])
    euler = SemiImplicitEuler(SplitModel(lam), np.ones(2), dt=0.1)
    rk4 = SemiImplicitRK4(SplitModel(lam), np.ones(2), dt=0.1)
    assert euler.stats.n_propagator_builds == 1
    assert rk4.stats.n_propagator_builds == 2

    _run(euler, np.ones(2), 5)
    _run(rk4, np.ones(2), 5)
    assert euler.stats.n_propagator_builds == 1
    assert rk4.stats.n_propagator_builds == 2


def test_shortened_step_builds_and_caches_new_propagator() -> None:
    """A dt_limit step builds a propagator for the shorter h once."""
    scheme = SemiImplicitEuler(SplitModel(np.array([-1.0])), np.ones(1), dt=0.1)
    scheme.step(np.ones(1), 0.0, dt_limit=0.04)
    scheme.step(np.ones(1), 0.0, dt_limit=0.04)
    assert scheme.stats.n_propagator_builds == 2


def test_shortened_steps_do_not_evict_configured_propagators() -> None:
    """Many distinct shortened steps never force a rebuild for dt or dt/2."""
    scheme = SemiImplicitRK4(SplitModel(np.array([-1.0, -3.0])), np.ones(2), dt=0.1)
    x = np.ones(2)
    limits = [0.013, 0.027, 0.041, 0.059, 0.077]
    for limit in limits:
        scheme.step(x, 0.0, dt_limit=limit)
        scheme.step(x, 0.0)
    assert scheme.stats.n_propagator_builds == 2 + 2 * len(limits)


def test_exact_sampling_reuses_configured_propagator() -> None:
    """Exact sampling off the dt grid keeps the dt propagator cached."""
    scheme = SemiImplicitRK4(SplitModel(np.array([-1.0, -3.0])), np.ones(2), dt=0.1)
    prop = scheme.propagator_for(0.1)
    series = TimeSeries(scheme, np.ones(2), sampling=SamplingConfig(interval=0.25))
    series.take(40)

    builds = scheme.stats.n_propagator_builds
    assert scheme.propagator_for(0.1) is prop
    assert scheme.stats.n_propagator_builds == builds
    # At most one shortened step (h and h/2) per output interval.
    assert builds <= 2 + 2 * 40


def test_linear_revision_change_rebuilds_with_new_operator() -> None:
    """set_linear invalidates the cache; the next step uses the new L."""
    model = SplitModel(np.array([-1.0, -1.0]))
    x = np.array([1.0, 2.0])
    h = 0.1
    scheme = SemiImplicitEuler(model, x, dt=h)

    new_lam = np.array([-5.0, 0.5])
    model.set_linear(new_lam)
    y = scheme.advance(x, 0.0)

    assert np.array_equal(y, np.exp(h * new_lam) * x)
    assert scheme.stats.n_propagator_builds == 2


def test_invalidate_propagators_rereads_operator() -> None:
    """invalidate_propagators forces a rebuild on the next step."""
    scheme = SemiImplicitRK4(SplitModel(np.array([-1.0])), np.ones(1), dt=0.1)
    scheme.invalidate_propagators()
    scheme.advance(np.ones(1), 0.0)
    assert scheme.stats.n_propagator_builds == 4


def test_propagator_build_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    """Propagator builds emit DEBUG records."""
    caplog.set_level(logging.DEBUG, logger="step_engine.semi_implicit")
    SemiImplicitEuler(SplitModel(np.array([-1.0])), np.ones(1), dt=0.1)
    assert any(
        "built exponential propagator" in rec.getMessage() for rec in caplog.records
    )


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------


def test_singular_resolvent_fails_at_construction() -> None:
    """I - hL singular at the configured dt raises PropagatorError."""
    with pytest.raises(PropagatorError, match="singular"):
        SemiImplicitEuler(
            SplitModel(np.array([10.0, -1.0])), np.ones(2), dt=0.1, propagator="resolvent"
        )


def test_overflowing_exponential_fails_at_construction() -> None:
    """exp(hL) overflow raises PropagatorError."""
    with pytest.raises(PropagatorError):
        SemiImplicitRK4(SplitModel(np.array([1e4])), np.ones(1), dt=1.0)


def test_model_without_split_is_rejected(decay_model: FunctionModel) -> None:
    """Models lacking linear()/nonlinear() raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match="semi-implicit contract"):
        SemiImplicitEuler(decay_model, np.ones(2), dt=0.1)  # type: ignore[arg-type]


def test_unknown_propagator_kind_is_rejected() -> None:
    """Unknown propagator names raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match="Unknown propagator"):
        SemiImplicitEuler(SplitModel(np.array([-1.0])), np.ones(1), dt=0.1, propagator="pade")


def test_nonlinear_bad_shape_raises() -> None:
    """A nonlinear term of the wrong shape raises ConfigurationError."""
    model = SplitModel(np.array([-1.0, -1.0]), lambda x, t: np.zeros(3))  # noqa: ARG005
    scheme = SemiImplicitEuler(model, np.ones(2), dt=0.1)
    with pytest.raises(ConfigurationError, match=r"nonlinear\(x, t\) has shape"):
        scheme.advance(np.ones(2), 0.0)
