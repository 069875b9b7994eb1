"""
State Selection Algorithm (SSA).

For every particle of the current population a deterministic "prime"
trajectory is rolled out under the nominal policy. The control sequence of
each prime trajectory is then replayed on M "double-prime" branches seeded
from the whole population, with independent process noise per branch per
step, to estimate the expected running cost and the constraint-violation
rate at each horizon step. The particle whose control sequence is feasible
(violation rate <= alpha at every step) with the lowest expected cost is
selected; when none is feasible, the least-violating one is.

Array layout follows the particle filter: states are column-stacked,
particle index on axis 1.
    prime states   : (n, L, N)
    prime controls : (p, L, N-1)
    per-step rates : (L, N-1)
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from config import DimensionError

logger = logging.getLogger(__name__)


@dataclass
class RolloutResult:
    prime_states: np.ndarray
    prime_controls: np.ndarray
    step_cost: np.ndarray               # (L, N-1) branch-averaged running cost
    state_violation_rate: np.ndarray    # (L, N-1)
    control_violation_rate: np.ndarray  # (L, N-1)
    violation_rate: np.ndarray          # (L, N-1) state or control violated

    @property
    def total_cost(self):
        return self.step_cost.sum(axis=1)

    @property
    def summed_violation(self):
        return self.violation_rate.sum(axis=1)


@dataclass
class SelectionResult:
    state: np.ndarray             # (n,) selected particle
    control: np.ndarray           # (p,) nominal policy at the selected particle
    index: int                    # index into the full population
    feasibility_mask: np.ndarray  # (L,) bool
    feasible: bool                # False when the fallback was used
    cost: float
    violation: float              # summed per-step violation rate of the selection


# =========================
# Prime trajectories
# =========================
def generate_prime_trajectories(model, X, N):
    """
    Roll every particle forward N-1 steps under the nominal policy, without
    process noise.

    X : (n, L) current particles

    Returns:
        states   : (n, L, N), states[:, :, 0] == X
        controls : (p, L, N-1), controls[:, :, t] = K0(states[:, :, t])
    """
    X = np.asarray(X, dtype=np.float64)
    n, L = X.shape
    states = np.empty((n, L, N))
    controls = np.empty((model.p, L, N - 1))
    states[:, :, 0] = X

    # recurrence in t; columns never interact
    for t in range(N - 1):
        U = model.control(states[:, :, t])
        controls[:, :, t] = U
        states[:, :, t + 1] = model.step(states[:, :, t], U)

    return states, controls


# =========================
# Double-prime branches
# =========================
def rollout_branches(model, limits, population, controls, M, rng):
    """
    Replay each particle's prime control sequence on M stochastic branches.

    Args:
        population : (n, L) full particle population, branch seeds are drawn
                     from it uniformly with replacement
        controls   : (p, C, N-1) prime controls of the C particles handled here
        M          : branches per particle
        rng        : np.random.Generator owned by this work unit

    Returns:
        step_cost, state_rate, control_rate, violation_rate : each (C, N-1)

    Cost and violation are evaluated on the state reached after applying
    the step-t control, so step t scores x''_{t+1}.
    """
    n, L = population.shape
    p, C, H = controls.shape
    K = C * M

    seeds = rng.integers(0, L, size=(C, M))
    B = population[:, seeds].reshape(n, K)     # (n, C*M), branch c*M + j

    step_cost = np.empty((C, H))
    state_rate = np.empty((C, H))
    control_rate = np.empty((C, H))
    violation_rate = np.empty((C, H))

    for t in range(H):
        U = np.broadcast_to(controls[:, :, t][:, :, None], (p, C, M)).reshape(p, K)
        W = model.process_noise.sample((C, M), rng).reshape(n, K)
        B = model.step(B, U, W)

        cost = model.cost(B, U).reshape(C, M)
        s_viol = (model.violated(B) | limits.state_violation(B)).reshape(C, M)
        c_viol = limits.control_violation(U).reshape(C, M)

        step_cost[:, t] = cost.mean(axis=1)
        state_rate[:, t] = s_viol.mean(axis=1)
        control_rate[:, t] = c_viol.mean(axis=1)
        violation_rate[:, t] = (s_viol | c_viol).mean(axis=1)

    return step_cost, state_rate, control_rate, violation_rate


def _chunks(L, chunk_size):
    return [slice(start, min(start + chunk_size, L)) for start in range(0, L, chunk_size)]


def rollout(model, config, X, rng, executor=None):
    """
    Prime trajectories for all particles, then double-prime branches.

    Particles are split into fixed-size chunks; each chunk gets its own
    generator spawned from one SeedSequence drawn from rng, so results do
    not depend on how many worker threads run the chunks.

    Returns: RolloutResult
    """
    X = np.asarray(X, dtype=np.float64)
    if X.shape != (config.n, config.L):
        raise DimensionError(f"population must be ({config.n}, {config.L}), got {X.shape}")

    states, controls = generate_prime_trajectories(model, X, config.N)

    chunks = _chunks(config.L, config.chunk_size)
    seed_seq = np.random.SeedSequence(int(rng.integers(0, 2**63 - 1)))
    streams = [np.random.default_rng(s) for s in seed_seq.spawn(len(chunks))]

    def work(args):
        sl, stream = args
        return rollout_branches(model, config.limits, X, controls[:, sl, :], config.M, stream)

    jobs = list(zip(chunks, streams))
    if executor is not None:
        parts = list(executor.map(work, jobs))
    elif config.num_workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=config.num_workers) as pool:
            parts = list(pool.map(work, jobs))
    else:
        parts = [work(job) for job in jobs]

    step_cost, state_rate, control_rate, violation_rate = (
        np.concatenate([part[k] for part in parts], axis=0) for k in range(4)
    )
    return RolloutResult(
        prime_states=states,
        prime_controls=controls,
        step_cost=step_cost,
        state_violation_rate=state_rate,
        control_violation_rate=control_rate,
        violation_rate=violation_rate,
    )


# =========================
# Feasibility & selection
# =========================
def feasibility_mask(violation_rate, alpha):
    """A particle is feasible when every per-step violation rate is <= alpha."""
    return np.all(np.asarray(violation_rate) <= alpha, axis=1)


def select_state(result, X, alpha):
    """
    Pick the minimum-cost feasible particle (lowest index on ties). With no
    feasible particle, fall back to the one with the smallest summed
    violation rate and report feasible=False.

    Returns: SelectionResult, whose index refers to the full population
    """
    mask = feasibility_mask(result.violation_rate, alpha)
    total_cost = result.total_cost
    summed = result.summed_violation

    if mask.any():
        candidates = np.flatnonzero(mask)
        sub_cost = total_cost[candidates]
        sub_cost = np.where(np.isnan(sub_cost), np.inf, sub_cost)
        # argmin returns the first minimum, candidates are ascending
        idx = int(candidates[np.argmin(sub_cost)])
        feasible = True
    else:
        idx = int(np.argmin(summed))
        feasible = False
        logger.warning(
            "no feasible state among %d particles; falling back to particle %d "
            "with summed violation rate %.3f", mask.size, idx, summed[idx]
        )

    return SelectionResult(
        state=np.array(X[:, idx]),
        control=np.array(result.prime_controls[:, idx, 0]),
        index=idx,
        feasibility_mask=mask,
        feasible=feasible,
        cost=float(total_cost[idx]),
        violation=float(summed[idx]),
    )


def state_selection_algorithm(X, model, config, rng, executor=None):
    """
    Run the rollout and the selection for one outer step.

    Args:
        X      : (n, L) read-only particle population
        model  : SystemModel
        config : SSAConfig
        rng    : np.random.Generator

    Returns:
        (SelectionResult, RolloutResult)
    """
    if (config.n, config.p) != (model.n, model.p):
        raise DimensionError(
            f"config (n={config.n}, p={config.p}) does not match model {model.name} (n={model.n}, p={model.p})"
        )
    result = rollout(model, config, X, rng, executor=executor)
    selection = select_state(result, X, config.alpha)
    logger.debug(
        "ssa: selected %d cost=%.4g violation=%.3f feasible=%d/%d",
        selection.index, selection.cost, selection.violation,
        int(selection.feasibility_mask.sum()), config.L,
    )
    return selection, result
