import argparse
import dataclasses
import logging
import os
from dataclasses import dataclass

import numpy as np

from config import InvalidControlError, SSAConfig, load_config
from particle_filter import ParticleFilter
from ssa import state_selection_algorithm
import system_model

logger = logging.getLogger(__name__)


# =========================
# Global Config / Constants
# =========================
NUM_MONTE_RUNS = 10
SIM_STEPS = 20
DEFAULT_SEED = 69


@dataclass
class SimulationResult:
    """
    Telemetry of one closed-loop run. K = steps_completed.

    true_states       : (K+1, n) ground truth, row 0 is the initial state
    measurements      : (K, m)
    selected_states   : (K, n) candidate state x* chosen at each step
    controls          : (K, p)
    selected_index    : (K,)
    particles         : (K, n, L) cloud the selection was made from
    estimates         : (K, n) filter mean after the measurement update
    violation_rate    : (K,) mean per-step violation rate of the selection
    costs             : (K,) expected cost of the selection
    feasibility_masks : (K, L)
    feasible          : (K,) False where the fallback was used
    degenerate        : (K,) True where the likelihood underflowed
    consistent        : (K,) chi-square innovation gate passed
    """
    true_states: np.ndarray
    measurements: np.ndarray
    selected_states: np.ndarray
    controls: np.ndarray
    selected_index: np.ndarray
    particles: np.ndarray
    estimates: np.ndarray
    violation_rate: np.ndarray
    costs: np.ndarray
    feasibility_masks: np.ndarray
    feasible: np.ndarray
    degenerate: np.ndarray
    consistent: np.ndarray
    failed: bool = False
    failure_step: int = None
    failure_reason: str = None

    @property
    def steps_completed(self):
        return self.selected_states.shape[0]

    @property
    def mean_violation_rate(self):
        if self.steps_completed == 0:
            return float("nan")
        return float(np.mean(self.violation_rate))


def _seed_sequence(seed):
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)


def _stack(rows, shape, dtype=np.float64):
    if rows:
        return np.stack(rows, axis=0)
    return np.empty((0,) + shape, dtype=dtype)


def run_simulation(model, config, steps=SIM_STEPS, seed=None, x0=None,
                   raise_on_failure=False, executor=None):
    """
    Closed loop: select -> control -> true plant -> measure -> filter.

    Args:
        model            : system_model.SystemModel
        config           : SSAConfig
        steps            : number of outer steps T
        seed             : int, SeedSequence or None (falls back to config.seed)
        x0               : (n,) true initial state, drawn from the prior if None
        raise_on_failure : raise InvalidControlError instead of returning a
                           failed result when a control is non-finite

    Returns:
        SimulationResult
    """
    ss = _seed_sequence(config.seed if seed is None else seed)
    pf_ss, ssa_ss, truth_ss = ss.spawn(3)
    pf_rng = np.random.default_rng(pf_ss)
    ssa_rng = np.random.default_rng(ssa_ss)
    truth_rng = np.random.default_rng(truth_ss)

    pf = ParticleFilter(model, config, pf_rng)

    if x0 is None:
        x_true = model.prior.sample(1, truth_rng)[:, 0]
    else:
        x_true = np.asarray(x0, dtype=np.float64).reshape(-1)
        if x_true.shape != (model.n,):
            raise ValueError(f"x0 must have shape ({model.n},), got {x_true.shape}")

    log = {k: [] for k in ("meas", "sel", "u", "idx", "cloud", "est", "viol",
                           "cost", "mask", "feas", "degen", "cons")}
    truth = [x_true.copy()]
    failed, failure_step, failure_reason = False, None, None

    logger.info("run start: plant=%s T=%d N=%d M=%d L=%d alpha=%.3f",
                model.name, steps, config.N, config.M, config.L, config.alpha)

    for k in range(steps):
        # -----------------------------
        # Rollout + selection
        # -----------------------------
        snap = pf.snapshot()
        selection, _ = state_selection_algorithm(snap.particles, model, config, ssa_rng, executor=executor)
        u = selection.control

        if not np.all(np.isfinite(u)):
            failed, failure_step = True, k
            failure_reason = f"non-finite control {u} (feasible={selection.feasible})"
            logger.error("run terminated at step %d: %s", k, failure_reason)
            if raise_on_failure:
                raise InvalidControlError(k, u)
            break

        # -----------------------------
        # True plant + measurement
        # -----------------------------
        w = model.process_noise.sample(1, truth_rng)
        x_true = model.step(x_true[:, None], u, w)[:, 0]
        v = model.measurement_noise.sample(1, truth_rng)
        z = model.observe(x_true[:, None], v)[:, 0]

        # -----------------------------
        # Filter propagate
        # -----------------------------
        fstep = pf.propagate(u, z)

        log["meas"].append(z)
        log["sel"].append(selection.state)
        log["u"].append(u)
        log["idx"].append(selection.index)
        log["cloud"].append(np.array(snap.particles))
        log["est"].append(pf.estimate())
        log["viol"].append(selection.violation / (config.N - 1))
        log["cost"].append(selection.cost)
        log["mask"].append(selection.feasibility_mask)
        log["feas"].append(selection.feasible)
        log["degen"].append(fstep.degenerate)
        log["cons"].append(fstep.consistent)
        truth.append(x_true.copy())

        logger.debug("step %d: u=%s x*=%s viol=%.3f feasible=%s",
                     k, u, selection.state, log["viol"][-1], selection.feasible)

    n, m, p, L = model.n, model.m, model.p, config.L
    result = SimulationResult(
        true_states=np.stack(truth, axis=0),
        measurements=_stack(log["meas"], (m,)),
        selected_states=_stack(log["sel"], (n,)),
        controls=_stack(log["u"], (p,)),
        selected_index=np.asarray(log["idx"], dtype=int),
        particles=_stack(log["cloud"], (n, L)),
        estimates=_stack(log["est"], (n,)),
        violation_rate=np.asarray(log["viol"], dtype=np.float64),
        costs=np.asarray(log["cost"], dtype=np.float64),
        feasibility_masks=_stack(log["mask"], (L,), dtype=bool),
        feasible=np.asarray(log["feas"], dtype=bool),
        degenerate=np.asarray(log["degen"], dtype=bool),
        consistent=np.asarray(log["cons"], dtype=bool),
        failed=failed,
        failure_step=failure_step,
        failure_reason=failure_reason,
    )
    logger.info("run finish: %d/%d steps, mean violation rate %.4f, fallback steps %d, degenerate steps %d",
                result.steps_completed, steps, result.mean_violation_rate,
                int(np.sum(~result.feasible)), int(np.sum(result.degenerate)))
    return result


def run_monte_carlo(model, config, runs=NUM_MONTE_RUNS, steps=SIM_STEPS, seed=DEFAULT_SEED):
    """
    Repeat the closed loop with independent seeds.

    Returns:
        (results, summary) where summary holds
          'runs', 'failures', 'mean_violation_rate', 'fallback_steps', 'degenerate_steps'
    """
    results = []
    for r, child in enumerate(np.random.SeedSequence(seed).spawn(runs)):
        logger.info("run: %d/%d", r + 1, runs)
        results.append(run_simulation(model, config, steps=steps, seed=child))

    rates = [res.mean_violation_rate for res in results if res.steps_completed > 0]
    summary = {
        'runs': runs,
        'failures': sum(res.failed for res in results),
        'mean_violation_rate': float(np.mean(rates)) if rates else float("nan"),
        'fallback_steps': int(sum(np.sum(~res.feasible) for res in results)),
        'degenerate_steps': int(sum(np.sum(res.degenerate) for res in results)),
    }
    return results, summary


# =========================
# CLI
# =========================
def build_config(args):
    """Plant defaults, then --config (if given), then command line overrides."""
    model_fn, limits_fn = system_model.PLANTS[args.plant]
    model = model_fn()

    cfg = SSAConfig(n=model.n, m=model.m, p=model.p, limits=limits_fn(), seed=DEFAULT_SEED)
    if args.config:
        cfg = load_config(args.config, base=cfg)

    overrides = {k: v for k, v in (("L", args.particles), ("N", args.horizon), ("M", args.branches),
                                   ("alpha", args.alpha), ("num_workers", args.workers),
                                   ("seed", args.seed))
                 if v is not None}
    cfg = dataclasses.replace(cfg, **overrides)
    return model, cfg


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Particle filter with Monte Carlo state selection")
    p.add_argument("--plant", choices=sorted(system_model.PLANTS), default="linear")
    p.add_argument("--steps", type=int, default=SIM_STEPS)
    p.add_argument("--runs", type=int, default=1)
    p.add_argument("--particles", type=int, default=None, help="L")
    p.add_argument("--horizon", type=int, default=None, help="N")
    p.add_argument("--branches", type=int, default=None, help="M")
    p.add_argument("--alpha", type=float, default=None)
    p.add_argument("--workers", type=int, default=None)
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--config", type=str, default=None, help="JSON parameter file")
    p.add_argument("--plot", action="store_true")
    p.add_argument("--animate", action="store_true")
    p.add_argument("--output-dir", type=str, default="sim_results")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    model, cfg = build_config(args)
    results, summary = run_monte_carlo(model, cfg, runs=args.runs, steps=args.steps, seed=cfg.seed)
    logger.info("summary: %s", summary)

    if args.plot or args.animate:
        import plots

        zones = {}
        if args.plant == "obstacle":
            zones = dict(obstacle=(system_model.R0, system_model.DMIN),
                         goal=(system_model.R_GOAL, system_model.GOAL_RADIUS))
        os.makedirs(args.output_dir, exist_ok=True)
        if args.plot:
            plots.plot_violation_rate(results, cfg.alpha, output_dir=args.output_dir)
            plots.plot_particles_vs_time(results[0], output_dir=args.output_dir, state_labels=["x", "y"])
        if args.animate and results[0].steps_completed > 0:
            plots.animate_selection(results[0], outfile=os.path.join(args.output_dir, "ssa.gif"), **zones)

    return 1 if summary['failures'] else 0


if __name__ == "__main__":
    raise SystemExit(main())
