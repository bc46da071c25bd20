# step_engine/examples/simple_sir.py
"""Single-location SIR as a canonical ODE example using TimeSeries.

This example demonstrates the core API:

- A Scheme advances one state by one step; TimeSeries drives it lazily.
- SamplingConfig fixes the output times independently of the internal step:
    * RK4 with dt == interval: one internal step per output time
    * Dormand-Prince with alignment="exact": adaptive substeps that land
      exactly on every output time
    * Dormand-Prince with alignment="nearest": adaptive steps no longer than
      the interval, emitting the committed state nearest to every output time

We model a normalized SIR system with state y = (S, I, R) and S + I + R = 1.

This script saves plots to disk (no interactive windows).
"""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from step_engine import (
    RK4,
    AdaptiveConfig,
    EmbeddedRK,
    FunctionModel,
    SamplingConfig,
    Scheme,
    TimeSeries,
)

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "sir"


def sir_field(
    state: np.ndarray,
    t: float,  # noqa: ARG001 (no explicit time dependence here)
    *,
    beta: float,
    gamma: float,
) -> np.ndarray:
    """Vector field for a normalized SIR model.

    Args:
        state: State vector (S, I, R).
        t: Current time (unused; included for the model contract).
        beta: Transmission rate.
        gamma: Recovery rate.

    Returns:
        (dS/dt, dI/dt, dR/dt).
    """
    s, i = state[0], state[1]
    new_inf = beta * s * i
    recov = gamma * i
    return np.array([-new_inf, new_inf - recov, recov])


def compute_conservation_drift(states: np.ndarray) -> float:
    """Compute max |S+I+R-1| over emitted states.

    Args:
        states: Emitted states, shape (n_samples, 3).

    Returns:
        Maximum absolute conservation drift.
    """
    return float(np.max(np.abs(states.sum(axis=1) - 1.0)))


def save_sir_plot(
    time: np.ndarray,
    states: np.ndarray,
    *,
    title: str,
    out_path: Path,
    drift: float | None = None,
) -> None:
    """Save S, I, R trajectories to an image file.

    Args:
        time: Emitted times, shape (n_samples,).
        states: Emitted states, shape (n_samples, 3).
        title: Plot title.
        out_path: Output path for the saved figure.
        drift: Optional conservation drift to annotate.
    """
    plt.figure(figsize=(8, 5))
    for idx, label in enumerate(("S", "I", "R")):
        plt.plot(time, states[:, idx], label=label)
    plt.grid(visible=True)
    plt.legend()

    if drift is not None and np.isfinite(drift):
        title = f"{title}\nmax |S+I+R-1| = {drift:.3e}"

    plt.title(title)
    plt.xlabel("Time")
    plt.ylabel("Proportion")
    plt.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=150)
    plt.close()


def _run_sir(
    scheme: Scheme,
    y0: np.ndarray,
    *,
    total_time: float,
    sampling: SamplingConfig,
) -> tuple[np.ndarray, np.ndarray]:
    """Collect every output sample up to total_time.

    Args:
        scheme: Scheme to drive.
        y0: Initial state (S, I, R).
        total_time: Simulation horizon.
        sampling: Output sampling configuration.

    Returns:
        (times, states) including the initial state.
    """
    n_samples = round(total_time / sampling.interval)
    times, states = TimeSeries(scheme, y0, sampling=sampling).take(n_samples)
    return np.concatenate([[0.0], times]), np.vstack([y0, states])


def main() -> None:
    """Run and save canonical SIR simulations demonstrating sampling semantics.

    Produces three saved plots:
      1) RK4: one step per output interval.
      2) Dormand-Prince, exact alignment on a coarser output grid.
      3) Dormand-Prince, nearest alignment on the same grid.

    Files are written to: examples/output/sir/
    """
    # ---------------------------------------------------------------------
    # Model parameters
    # ---------------------------------------------------------------------
    beta = 0.30
    gamma = 1.0 / 7.0
    initial_infected = 0.01

    model = FunctionModel(lambda y, t: sir_field(y, t, beta=beta, gamma=gamma))
    y0 = np.array([1.0 - initial_infected, initial_infected, 0.0])

    total_time = 160.0

    # ---------------------------------------------------------------------
    # (1) RK4 on a fine output grid (one step per sample)
    # ---------------------------------------------------------------------
    fine = SamplingConfig(interval=0.2)
    times, states = _run_sir(
        RK4(model, y0, dt=fine.interval), y0, total_time=total_time, sampling=fine
    )
    save_sir_plot(
        times,
        states,
        title="SIR via TimeSeries (RK4, dt = output interval)",
        out_path=_OUTPUT_DIR / "simple_sir_rk4.png",
        drift=compute_conservation_drift(states),
    )

    # ---------------------------------------------------------------------
    # (2)/(3) Dormand-Prince on a coarse output grid, both alignments
    # ---------------------------------------------------------------------
    cfg = AdaptiveConfig(initial_dt=0.1, rtol=1e-8, atol=1e-10)
    for alignment in ("exact", "nearest"):
        coarse = SamplingConfig(interval=4.0, alignment=alignment)
        scheme = EmbeddedRK(model, y0, cfg, tableau="dormand-prince")
        times, states = _run_sir(scheme, y0, total_time=total_time, sampling=coarse)
        save_sir_plot(
            times,
            states,
            title=(
                f"SIR via TimeSeries (Dormand-Prince, {alignment} alignment; "
                f"{scheme.stats.n_steps} steps, {scheme.stats.n_rejected} rejected)"
            ),
            out_path=_OUTPUT_DIR / f"simple_sir_dopri_{alignment}.png",
            drift=compute_conservation_drift(states),
        )


if __name__ == "__main__":
    main()
