import json
import logging
from dataclasses import dataclass, field, fields, replace

import numpy as np

logger = logging.getLogger(__name__)


# =========================
# Errors
# =========================
class SSAError(Exception):
    """Base class for every error raised by the state selection simulator."""


class ConfigurationError(SSAError, ValueError):
    """Bad parameters supplied at construction time."""


class DimensionError(SSAError, ValueError):
    """A dynamics callable returned an array of the wrong shape."""


class DegenerateLikelihoodError(SSAError):
    """All measurement likelihoods underflowed to zero."""

    def __init__(self, likelihood_sum, message=None):
        self.likelihood_sum = float(likelihood_sum)
        if message is None:
            message = f"degenerate likelihood: sum of particle likelihoods is {self.likelihood_sum:.3g}"
        super().__init__(message)


class InvalidControlError(SSAError):
    """The selected control is not finite."""

    def __init__(self, step, control):
        self.step = step
        self.control = np.asarray(control)
        super().__init__(f"non-finite control {self.control} at step {step}")


# =========================
# Default Parameters
# =========================
HORIZON = 5            # N, prime trajectory length (including current state)
NUM_BRANCHES = 100     # M, Monte Carlo branches per particle
NUM_PARTICLES = 2000   # L
VIOLATION_THRESHOLD = 0.15
CHUNK_SIZE = 256       # particles per rollout work unit


def _as_box(box, dim, name):
    """Validate a (lo, hi) pair into two float tuples of length dim."""
    if box is None:
        return None
    try:
        lo, hi = box
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a (lo, hi) pair, got {box!r}")
    lo = np.broadcast_to(np.asarray(lo, dtype=float), (dim,)).copy()
    hi = np.broadcast_to(np.asarray(hi, dtype=float), (dim,)).copy()
    if np.any(lo > hi):
        raise ConfigurationError(f"{name} lower bound exceeds upper bound: {lo} > {hi}")
    return tuple(lo.tolist()), tuple(hi.tolist())


@dataclass(frozen=True)
class SSALimits:
    """
    Box constraints on the state and on the control.

    Either box may be None (unbounded). Bounds are inclusive. Resolved
    boxes hold plain float tuples so configs compare and hash by value.
    """
    state: tuple = None
    control: tuple = None

    def resolved(self, n, p):
        """Return a copy whose boxes are float tuples of the right size."""
        return SSALimits(
            state=_as_box(self.state, n, "state limits"),
            control=_as_box(self.control, p, "control limits"),
        )

    def state_violation(self, X):
        """
        X : (n, K) states
        Returns (K,) bool, True where a column leaves the state box.
        """
        if self.state is None:
            return np.zeros(X.shape[1], dtype=bool)
        lo, hi = (np.asarray(b) for b in self.state)
        return np.any((X < lo[:, None]) | (X > hi[:, None]), axis=0)

    def control_violation(self, U):
        """
        U : (p, K) controls
        Returns (K,) bool, True where a column leaves the control box.
        """
        if self.control is None:
            return np.zeros(U.shape[1], dtype=bool)
        lo, hi = (np.asarray(b) for b in self.control)
        return np.any((U < lo[:, None]) | (U > hi[:, None]), axis=0)


@dataclass(frozen=True)
class SSAConfig:
    """
    Immutable parameters of the particle filter and the state selection
    algorithm. Supplied once; every component borrows it read-only.
    """
    N: int = HORIZON
    M: int = NUM_BRANCHES
    L: int = NUM_PARTICLES
    n: int = 2
    m: int = 2
    p: int = 2
    alpha: float = VIOLATION_THRESHOLD
    limits: SSALimits = field(default_factory=SSALimits)
    chunk_size: int = CHUNK_SIZE
    num_workers: int = 1
    seed: int = None

    def __post_init__(self):
        for name in ("N", "M", "L", "n", "m", "p", "chunk_size", "num_workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.N < 2:
            raise ConfigurationError(f"horizon N must be at least 2, got {self.N}")
        if not (0.0 <= float(self.alpha) <= 1.0):
            raise ConfigurationError(f"alpha must lie in [0, 1], got {self.alpha}")
        if self.limits is None:
            object.__setattr__(self, "limits", SSALimits())
        elif not isinstance(self.limits, SSALimits):
            raise ConfigurationError(f"limits must be SSALimits, got {type(self.limits).__name__}")
        object.__setattr__(self, "limits", self.limits.resolved(self.n, self.p))

    @classmethod
    def from_dict(cls, data, base=None):
        """
        Build a config from a {"ssa": {...}, "limits": {...}} mapping.

        With base given, keys missing from the mapping keep the values of
        base, and each limit entry (state, control) replaces only its own box.
        """
        data = dict(data)
        unknown = set(data) - {"ssa", "limits"}
        if unknown:
            raise ConfigurationError(f"unknown config sections: {sorted(unknown)}")

        ssa = dict(data.get("ssa", {}))
        allowed = {f.name for f in fields(cls)} - {"limits"}
        bad = set(ssa) - allowed
        if bad:
            raise ConfigurationError(f"unknown ssa parameters: {sorted(bad)}")

        limits = dict(data.get("limits", {}))
        bad = set(limits) - {"state", "control"}
        if bad:
            raise ConfigurationError(f"unknown limit entries: {sorted(bad)}")

        if base is None:
            return cls(limits=SSALimits(**limits), **ssa)
        merged = SSALimits(state=limits.get("state", base.limits.state),
                           control=limits.get("control", base.limits.control))
        return replace(base, limits=merged, **ssa)


def load_config(path, base=None):
    """
    Load an SSAConfig from a JSON file. Missing keys take the values of base
    when given, the module defaults otherwise.

    Example:
        {"ssa": {"N": 5, "M": 100, "L": 2000, "alpha": 0.15},
         "limits": {"state": [[-10, -10], [10, 10]]}}
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be an object")
    cfg = SSAConfig.from_dict(data, base=base)
    logger.info("loaded config from %s: N=%d M=%d L=%d alpha=%.3f", path, cfg.N, cfg.M, cfg.L, cfg.alpha)
    return cfg
