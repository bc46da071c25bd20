# tests/test_time_series.py
"""Tests for step_engine.time_series.

Coverage in this file:
1) One committed step per next() without sampling; yielded states are copies.
2) Exact alignment lands on t0 + k * interval for fixed and adaptive schemes.
3) Nearest alignment emits the nearer of the last two committed states,
   ties going to the later one.
4) Restart law: a producer built from a checkpoint continues identically.
5) Non-finite committed states raise ArithmeticAnomalyError.
6) NStep wrapper and argument validation.
"""

from __future__ import annotations

import numpy as np
import pytest

from step_engine.adaptive import AdaptiveConfig, EmbeddedRK
from step_engine.errors import ArithmeticAnomalyError, ConfigurationError
from step_engine.explicit import RK4, Euler
from step_engine.model import FunctionModel
from step_engine.time_series import NStep, SamplingConfig, TimeSeries, time_series


def _adaptive_lorenz(lorenz_model: FunctionModel) -> EmbeddedRK:
    cfg = AdaptiveConfig(initial_dt=1e-3, rtol=1e-8, atol=1e-10)
    return EmbeddedRK(lorenz_model, np.ones(3), cfg, tableau="dormand-prince")


# -----------------------------------------------------------------------------
# Unsampled iteration
# -----------------------------------------------------------------------------


def test_next_commits_one_step(decay_model: FunctionModel) -> None:
    """Each next() is exactly one committed step of the scheme."""
    scheme = Euler(decay_model, np.ones(2), dt=0.1)
    series = time_series(np.ones(2), scheme)

    t1, x1 = next(series)
    t2, x2 = next(series)

    assert t1 == pytest.approx(0.1)
    assert t2 == pytest.approx(0.2)
    assert np.allclose(x1, 0.9)
    assert np.allclose(x2, 0.81)
    assert scheme.stats.n_steps == 2


def test_yielded_states_are_independent_copies(decay_model: FunctionModel) -> None:
    """Mutating a yielded state does not affect the run."""
    series = TimeSeries(Euler(decay_model, np.ones(1), dt=0.1), np.ones(1))
    _, x1 = next(series)
    x1[:] = 1e6
    _, x2 = next(series)
    assert x2[0] == pytest.approx(0.81)


def test_initial_state_is_copied(decay_model: FunctionModel) -> None:
    """The caller's x0 is never mutated."""
    x0 = np.ones(2)
    series = TimeSeries(Euler(decay_model, x0, dt=0.1), x0)
    series.take(3)
    assert np.array_equal(x0, np.ones(2))


def test_take_shapes_and_t0(decay_model: FunctionModel) -> None:
    """take(n) stacks n pairs; times start after t0."""
    series = TimeSeries(RK4(decay_model, np.ones((2, 3)), dt=0.5), np.ones((2, 3)), t0=10.0)
    times, states = series.take(4)
    assert times.shape == (4,)
    assert states.shape == (4, 2, 3)
    assert np.allclose(times, [10.5, 11.0, 11.5, 12.0])
    assert series.t == pytest.approx(12.0)


def test_take_negative_raises(decay_model: FunctionModel) -> None:
    """take with a negative count raises ConfigurationError."""
    series = TimeSeries(Euler(decay_model, np.ones(1), dt=0.1), np.ones(1))
    with pytest.raises(ConfigurationError, match="take"):
        series.take(-1)


def test_state_property_is_read_only(decay_model: FunctionModel) -> None:
    """The current-state view cannot be written through."""
    series = TimeSeries(Euler(decay_model, np.ones(1), dt=0.1), np.ones(1))
    next(series)
    with pytest.raises(ValueError, match="read-only"):
        series.state[0] = 0.0


def test_x0_shape_mismatch_raises(decay_model: FunctionModel) -> None:
    """x0 must match the scheme prototype."""
    with pytest.raises(ConfigurationError, match="x0 has shape"):
        TimeSeries(Euler(decay_model, np.ones(2), dt=0.1), np.ones(3))


# -----------------------------------------------------------------------------
# Exact sampling
# -----------------------------------------------------------------------------


def test_exact_alignment_fixed_step(decay_model: FunctionModel) -> None:
    """Output times are exactly t0 + k * interval; the last step is shortened."""
    scheme = RK4(decay_model, np.ones(1), dt=0.03)
    sampling = SamplingConfig(interval=0.1, alignment="exact")
    times, states = TimeSeries(scheme, np.ones(1), sampling=sampling).take(5)

    expected_times = np.array([0.0 + k * 0.1 for k in range(1, 6)])
    assert np.array_equal(times, expected_times)
    assert np.allclose(states[:, 0], np.exp(-expected_times), rtol=1e-7)
    # Three full steps plus one shortened step per interval.
    assert scheme.stats.n_steps == 20


def test_exact_alignment_adaptive(lorenz_model: FunctionModel) -> None:
    """Adaptive schemes also land exactly on output times."""
    sampling = SamplingConfig(interval=0.05)
    series = TimeSeries(_adaptive_lorenz(lorenz_model), np.ones(3), sampling=sampling)
    times, states = series.take(10)
    assert np.array_equal(times, np.array([k * 0.05 for k in range(1, 11)]))
    assert np.all(np.isfinite(states))


def test_exact_alignment_zero_state_relative_tolerance_only(
    decay_model: FunctionModel,
) -> None:
    """A state that stays at zero under atol = 0 still reaches every output time."""
    cfg = AdaptiveConfig(initial_dt=0.1, rtol=1e-6, atol=0.0)
    scheme = EmbeddedRK(decay_model, np.zeros(2), cfg)
    sampling = SamplingConfig(interval=1.0)
    times, states = TimeSeries(scheme, np.zeros(2), sampling=sampling).take(5)
    assert np.array_equal(times, [1.0, 2.0, 3.0, 4.0, 5.0])
    assert np.array_equal(states, np.zeros((5, 2)))


def test_interval_equal_to_dt_is_one_step_per_sample(decay_model: FunctionModel) -> None:
    """interval == dt emits every committed step."""
    scheme = Euler(decay_model, np.ones(1), dt=0.25)
    series = TimeSeries(scheme, np.ones(1), sampling=SamplingConfig(interval=0.25))
    times, _ = series.take(4)
    assert np.array_equal(times, [0.25, 0.5, 0.75, 1.0])
    assert scheme.stats.n_steps == 4


# -----------------------------------------------------------------------------
# Nearest sampling
# -----------------------------------------------------------------------------


def test_nearest_alignment_picks_nearer_committed_state(decay_model: FunctionModel) -> None:
    """The nearer of the two states bracketing the output time is emitted."""
    scheme = Euler(decay_model, np.ones(1), dt=0.03)
    sampling = SamplingConfig(interval=0.1, alignment="nearest")
    series = TimeSeries(scheme, np.ones(1), sampling=sampling)

    t1, x1 = next(series)
    t2, x2 = next(series)

    # target 0.1 lies between 0.09 and 0.12: 0.09 is nearer
    assert t1 == pytest.approx(0.09)
    assert x1[0] == pytest.approx(0.97**3)
    # target 0.2 lies between 0.18 and 0.21: 0.21 is nearer
    assert t2 == pytest.approx(0.21)
    assert x2[0] == pytest.approx(0.97**7)
    # integration continues from the latest committed state
    assert series.t == pytest.approx(0.21)


def test_nearest_alignment_tie_goes_to_later_state(decay_model: FunctionModel) -> None:
    """An output time midway between two states emits the later one."""
    scheme = Euler(decay_model, np.ones(1), dt=0.5)
    sampling = SamplingConfig(interval=0.75, alignment="nearest")
    t, x = next(TimeSeries(scheme, np.ones(1), sampling=sampling))
    assert t == 1.0
    assert x[0] == pytest.approx(0.25)


def test_nearest_alignment_never_shortens_steps(decay_model: FunctionModel) -> None:
    """All internal steps have the configured dt."""
    scheme = Euler(decay_model, np.ones(1), dt=0.03)
    sampling = SamplingConfig(interval=0.1, alignment="nearest")
    series = TimeSeries(scheme, np.ones(1), sampling=sampling)
    series.take(3)
    assert series.t == pytest.approx(scheme.stats.n_steps * 0.03)


def test_nearest_alignment_adaptive_emits_increasing_times() -> None:
    """A growing adaptive dt still yields one distinct committed state per sample."""
    slow_decay = FunctionModel(lambda x, t: -0.01 * x)  # noqa: ARG005
    scheme = EmbeddedRK(slow_decay, np.ones(1), AdaptiveConfig(initial_dt=0.5, rtol=1e-3))
    sampling = SamplingConfig(interval=0.5, alignment="nearest")
    times, states = TimeSeries(scheme, np.ones(1), sampling=sampling).take(30)

    assert np.all(np.diff(times) > 0.0)
    assert np.all(np.abs(times - 0.5 * np.arange(1, 31)) <= 0.25 + 1e-12)
    assert np.allclose(states[:, 0], np.exp(-0.01 * times), rtol=1e-3)


# -----------------------------------------------------------------------------
# Restart law
# -----------------------------------------------------------------------------


def test_restart_from_checkpoint_fixed_step(decay_model: FunctionModel) -> None:
    """A restarted fixed-step producer continues bit-for-bit."""
    series = TimeSeries(RK4(decay_model, np.ones(2), dt=0.1), np.ones(2))
    series.take(7)
    ckpt = series.checkpoint()
    assert ckpt.dt is None

    reference = series.take(5)
    restarted = TimeSeries.from_checkpoint(RK4(decay_model, np.ones(2), dt=0.1), ckpt)
    continued = restarted.take(5)

    assert np.array_equal(reference[0], continued[0])
    assert np.array_equal(reference[1], continued[1])


def test_restart_from_checkpoint_adaptive_exact(lorenz_model: FunctionModel) -> None:
    """Adaptive dt and the sampling grid are restored from the checkpoint."""
    sampling = SamplingConfig(interval=0.05, alignment="exact")
    series = TimeSeries(_adaptive_lorenz(lorenz_model), np.ones(3), sampling=sampling)
    series.take(6)
    ckpt = series.checkpoint()
    assert ckpt.dt is not None
    assert ckpt.sample_index == 6

    reference = series.take(6)
    restarted = TimeSeries.from_checkpoint(
        _adaptive_lorenz(lorenz_model), ckpt, sampling=sampling
    )
    continued = restarted.take(6)

    assert np.array_equal(reference[0], continued[0])
    assert np.array_equal(reference[1], continued[1])


def test_restart_from_checkpoint_nearest(decay_model: FunctionModel) -> None:
    """Nearest sampling resumes on the original output grid."""
    sampling = SamplingConfig(interval=0.1, alignment="nearest")
    series = TimeSeries(Euler(decay_model, np.ones(1), dt=0.03), np.ones(1), sampling=sampling)
    series.take(4)
    ckpt = series.checkpoint()

    reference = series.take(4)
    restarted = TimeSeries.from_checkpoint(
        Euler(decay_model, np.ones(1), dt=0.03), ckpt, sampling=sampling
    )
    continued = restarted.take(4)

    assert np.array_equal(reference[0], continued[0])
    assert np.array_equal(reference[1], continued[1])


def test_checkpoint_is_detached_from_run(decay_model: FunctionModel) -> None:
    """Advancing after a checkpoint does not alter it."""
    series = TimeSeries(Euler(decay_model, np.ones(1), dt=0.1), np.ones(1))
    next(series)
    ckpt = series.checkpoint()
    series.take(3)
    assert ckpt.t == pytest.approx(0.1)
    assert ckpt.state[0] == pytest.approx(0.9)


# -----------------------------------------------------------------------------
# Validation / anomalies
# -----------------------------------------------------------------------------


def test_non_finite_state_raises() -> None:
    """A committed NaN/Inf state raises ArithmeticAnomalyError."""
    model = FunctionModel(lambda x, t: np.full_like(x, np.inf))  # noqa: ARG005
    series = TimeSeries(Euler(model, np.ones(2), dt=0.1), np.ones(2))
    with pytest.raises(ArithmeticAnomalyError, match="2 non-finite"):
        next(series)


def test_non_finite_check_can_be_disabled() -> None:
    """check_finite=False lets non-finite states through."""
    model = FunctionModel(lambda x, t: np.full_like(x, np.inf))  # noqa: ARG005
    series = TimeSeries(Euler(model, np.ones(1), dt=0.1), np.ones(1), check_finite=False)
    _, x = next(series)
    assert np.isinf(x[0])


def test_interval_smaller_than_dt_raises(decay_model: FunctionModel) -> None:
    """Sampling faster than the fixed step is a configuration error."""
    with pytest.raises(ConfigurationError, match="smaller than the scheme step"):
        TimeSeries(
            Euler(decay_model, np.ones(1), dt=0.1),
            np.ones(1),
            sampling=SamplingConfig(interval=0.05),
        )


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"interval": 0.0}, "interval must be a finite float > 0"),
        ({"interval": float("inf")}, "interval must be a finite float > 0"),
        ({"interval": 0.1, "alignment": "floor"}, "Unknown alignment"),
    ],
)
def test_sampling_config_validation(kwargs: dict[str, object], match: str) -> None:
    """Invalid sampling parameters raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match=match):
        SamplingConfig(**kwargs)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# NStep
# -----------------------------------------------------------------------------


def test_nstep_equals_repeated_inner_steps(decay_model: FunctionModel) -> None:
    """NStep(scheme, n) applies n inner steps per step."""
    inner = Euler(decay_model, np.ones(1), dt=0.1)
    wrapped = NStep(inner, 5)
    assert wrapped.dt == pytest.approx(0.5)
    assert wrapped.order == 1

    y = wrapped.iterate(np.ones(1))
    assert y[0] == pytest.approx(0.9**5)
    assert inner.stats.n_field_evals == 5

    t, _ = next(TimeSeries(wrapped, np.ones(1)))
    assert t == pytest.approx(0.5)


def test_nstep_rejects_adaptive_and_bad_counts(decay_model: FunctionModel) -> None:
    """NStep wraps fixed-step schemes with a positive integer count."""
    with pytest.raises(ConfigurationError, match="fixed-step"):
        NStep(EmbeddedRK(decay_model, np.ones(1)), 2)  # type: ignore[arg-type]
    inner = Euler(decay_model, np.ones(1), dt=0.1)
    for bad in (0, -1, 2.5, True):
        with pytest.raises(ConfigurationError, match="integer n >= 1"):
            NStep(inner, bad)  # type: ignore[arg-type]
