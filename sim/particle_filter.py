import logging
from dataclasses import dataclass

import numpy as np
from scipy.linalg import cho_solve
from scipy.stats import chi2

from config import DegenerateLikelihoodError, DimensionError

logger = logging.getLogger(__name__)

# Particle Filter Constants
LIKELIHOOD_FLOOR = 1e-300       # sum of likelihoods below this is degenerate
REJUVENATION_SCALE = 0.25       # jitter = REJUVENATION_SCALE * process noise covariance
INCONSISTENCY_PROB = 0.995      # chi-square gate on the innovation


@dataclass
class ParticleSet:
    """
    Weighted particle population.

    particles : (n, L) one column per particle
    weights   : (L,)   non-negative, summing to 1
    """
    particles: np.ndarray
    weights: np.ndarray

    def __post_init__(self):
        self.particles = np.asarray(self.particles, dtype=np.float64)
        self.weights = np.asarray(self.weights, dtype=np.float64)
        if self.particles.ndim != 2:
            raise DimensionError(f"particles must be (n, L), got shape {self.particles.shape}")
        if self.weights.shape != (self.particles.shape[1],):
            raise DimensionError(
                f"weights shape {self.weights.shape} does not match {self.particles.shape[1]} particles"
            )

    @property
    def size(self):
        return self.particles.shape[1]

    @property
    def dim(self):
        return self.particles.shape[0]

    def copy(self):
        return ParticleSet(self.particles.copy(), self.weights.copy())

    @classmethod
    def uniform(cls, particles):
        particles = np.asarray(particles, dtype=np.float64)
        L = particles.shape[1]
        return cls(particles, np.full(L, 1.0 / L))


@dataclass
class FilterStep:
    """What happened during one propagate() call."""
    degenerate: bool
    ess: float
    consistency_stat: float
    consistent: bool


def pf_init(prior, L, rng):
    """
    Draw the initial particle cloud from the prior.

    Returns:
        ParticleSet with (n, L) particles and uniform weights
    """
    return ParticleSet.uniform(prior.sample(L, rng))

def time_update(model, X, u, W):
    """
    Push every particle through the transition function.

    X : (n, L) particles
    u : (p,) control shared by all particles
    W : (n, L) process noise, one independent column per particle

    Column i of the result depends only on column i of X and W.
    """
    X = np.asarray(X, dtype=np.float64)
    W = np.asarray(W, dtype=np.float64)
    if W.shape != X.shape:
        raise DimensionError(f"process noise shape {W.shape} does not match particles {X.shape}")
    u = np.asarray(u, dtype=np.float64).reshape(-1)
    U = np.broadcast_to(u[:, None], (u.size, X.shape[1]))
    return model.step(X, U, W)

def log_likelihoods(model, X, observation):
    """
    Gaussian log-likelihood, up to a constant, of the observation for
    every particle: -1/2 r' V^-1 r with r = observation - h(x).

    Returns: (L,)
    """
    y = np.asarray(observation, dtype=np.float64).reshape(-1)
    if y.shape != (model.m,):
        raise DimensionError(f"observation must have shape ({model.m},), got {y.shape}")
    noise = model.measurement_noise
    r = (y - noise.mean)[:, None] - model.observe(X)          # (m, L)
    q = np.sum(r * cho_solve((noise.chol, True), r), axis=0)  # (L,)
    return -0.5 * q

def measurement_update(model, X, w, observation):
    """
    Weight the particles by the measurement likelihood and normalise.

    Raises:
        DegenerateLikelihoodError if every likelihood underflows
    """
    lk = np.exp(log_likelihoods(model, X, observation))
    w_new = np.asarray(w, dtype=np.float64) * lk
    s = w_new.sum()
    if not np.isfinite(s) or s < LIKELIHOOD_FLOOR:
        raise DegenerateLikelihoodError(s)
    return w_new / s

def inverse_cdf_resample(weights, rng):
    """
    Multinomial resampling by inverse-CDF lookup: one uniform draw per
    output slot, mapped to the first index whose cumulative weight is
    >= the draw.

    Weights are clipped and renormalised first, so small floating point
    drift away from sum 1 is harmless.

    Returns: indices (L,)
    """
    w = np.clip(np.asarray(weights, dtype=np.float64), 0.0, None)
    s = w.sum()
    if not np.isfinite(s) or s <= 0.0:
        raise DegenerateLikelihoodError(s, "cannot resample: weights sum to %r" % s)

    cdf = np.cumsum(w / s)
    cdf[-1] = 1.0
    draws = rng.random(w.size)
    return np.searchsorted(cdf, draws, side="left")

def resample(particle_set, rng):
    """Copy particles according to their weights; weights reset to uniform."""
    idx = inverse_cdf_resample(particle_set.weights, rng)
    return ParticleSet.uniform(particle_set.particles[:, idx])

def effective_sample_size(weights):
    w = np.asarray(weights, dtype=np.float64)
    return 1.0 / np.sum(w**2)

def jitter_particles(X, cov, kappa=REJUVENATION_SCALE, rng=None):
    """
    Particle rejuvenation: X_new = X + N(0, kappa * diag(cov)).

    Args:
        X     : (d, L) particles
        cov   : (d, d) covariance whose diagonal sets the per-state spread
        kappa : scale factor for the noise intensity
    """
    X = np.asarray(X, dtype=np.float64)
    var_vec = np.diag(np.asarray(cov, dtype=np.float64))
    if var_vec.shape != (X.shape[0],):
        raise DimensionError(f"jitter covariance must be ({X.shape[0]}, {X.shape[0]})")
    std_vec = np.sqrt(max(kappa, 0.0) * np.maximum(var_vec, 0.0))
    return X + rng.standard_normal(size=X.shape) * std_vec[:, None]

def weighted_median(values, weights):
    """Compute the weighted median of a 1D array."""
    sorter = np.argsort(values)
    values, weights = values[sorter], weights[sorter]
    cdf = np.cumsum(weights) / np.sum(weights)
    return values[np.searchsorted(cdf, 0.5)]

def estimate_state(particle_set, median=False):
    """Weighted mean (or per-dimension weighted median) of the particle cloud."""
    X, w = particle_set.particles, particle_set.weights
    s = w.sum()
    w = np.full_like(w, 1.0 / w.size) if (not np.isfinite(s) or s <= 0.0) else w / s
    if median:
        return np.array([weighted_median(X[i], w) for i in range(X.shape[0])])
    return X @ w

def measurement_consistency(model, particle_set, observation, prob=INCONSISTENCY_PROB):
    """
    Chi-square test of the innovation of the weighted-mean estimate.

    Returns:
        (stat, consistent) where consistent is stat <= chi2.ppf(prob, m)
    """
    mu = estimate_state(particle_set)
    stat = -2.0 * log_likelihoods(model, mu[:, None], observation)[0]
    return float(stat), bool(stat <= chi2.ppf(prob, df=model.m))


class ParticleFilter:
    """
    Bootstrap particle filter. Owns the ParticleSet and mutates it in place
    once per propagate() call; everything else only reads snapshots.
    """

    def __init__(self, model, config, rng, particle_set=None):
        if config.n != model.n or config.m != model.m or config.p != model.p:
            raise DimensionError(
                f"config dimensions (n={config.n}, m={config.m}, p={config.p}) do not match "
                f"model {model.name} (n={model.n}, m={model.m}, p={model.p})"
            )
        self.model = model
        self.config = config
        self.rng = rng
        if particle_set is None:
            particle_set = pf_init(model.prior, config.L, rng)
        if particle_set.dim != model.n or particle_set.size != config.L:
            raise DimensionError(
                f"particle set is ({particle_set.dim}, {particle_set.size}), expected ({model.n}, {config.L})"
            )
        self.particle_set = particle_set

    @property
    def particles(self):
        return self.particle_set.particles

    @property
    def weights(self):
        return self.particle_set.weights

    def snapshot(self):
        """Read-only copy for the rollout engine."""
        snap = self.particle_set.copy()
        snap.particles.setflags(write=False)
        snap.weights.setflags(write=False)
        return snap

    def estimate(self):
        return estimate_state(self.particle_set)

    def time_update(self, u):
        W = self.model.process_noise.sample(self.particle_set.size, self.rng)
        self.particle_set.particles = time_update(self.model, self.particle_set.particles, u, W)

    def measurement_update(self, observation):
        self.particle_set.weights = measurement_update(
            self.model, self.particle_set.particles, self.particle_set.weights, observation
        )

    def resample(self):
        self.particle_set = resample(self.particle_set, self.rng)

    def propagate(self, u, observation):
        """
        Time update, measurement update and resampling for one step.

        A degenerate likelihood does not abort: the prior weights are kept,
        resampling is skipped and the cloud is jittered instead.
        """
        self.time_update(u)
        stat, consistent = measurement_consistency(self.model, self.particle_set, observation)

        try:
            self.measurement_update(observation)
        except DegenerateLikelihoodError as exc:
            logger.warning("%s; skipping resample and jittering particles", exc)
            self.particle_set.particles = jitter_particles(
                self.particle_set.particles, self.model.process_noise.cov, rng=self.rng
            )
            return FilterStep(degenerate=True, ess=effective_sample_size(self.particle_set.weights),
                              consistency_stat=stat, consistent=consistent)

        ess = effective_sample_size(self.particle_set.weights)
        self.resample()
        logger.debug("pf step: ess=%.1f chi2=%.2f consistent=%s", ess, stat, consistent)
        return FilterStep(degenerate=False, ess=ess,
                          consistency_stat=stat, consistent=consistent)
