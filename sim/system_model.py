import numpy as np

from config import DimensionError, SSALimits
from noise import GaussianNoise


# System Constants
NUM_STATES = 2        # [x, y]
NUM_MEASUREMENTS = 2  # [x, y]
NUM_CONTROLS = 2      # [ux, uy]

# Noise / prior config
process_noise_variance = 0.5
measurement_noise_variance = 0.5
prior_mean = np.array([7.5, -7.5])
prior_variance = 0.5

# Linear test plant
A_LINEAR = np.array([
                [0.95, 0.05],
                [0.00, 0.95]
            ])
B_LINEAR = np.eye(NUM_STATES)
STATE_LIM = [ -10.0, 10.0 ]

# Obstacle plant (single integrator steered toward a goal)
obstacle_dt = 0.1
R0 = np.array([1.5, 1.2])        # obstacle centre
DMIN = 0.5                       # keep-out radius
R_GOAL = np.array([3.0, 3.0])
GOAL_RADIUS = 0.25
K_GOAL = 0.5                     # proportional gain of the nominal policy
CONTROL_WEIGHT = 0.1
CONTROL_LIM = [ -2.0, 2.0 ]
obstacle_process_variance = 0.005
obstacle_measurement_variance = 0.01
obstacle_prior_mean = np.array([0.0, 0.0])
obstacle_prior_variance = 0.01


class SystemModel:
    """
    Adapter around the externally supplied plant.

    All callables work on column-stacked batches:
        transition(X, U, W) -> (n, K)   X : (n, K), U : (p, K), W : (n, K)
        measure(X, V)       -> (m, K)   V : (m, K)
        policy(X)           -> (p, K)
        running_cost(X, U)  -> (K,)
        violates(X)         -> (K,) bool

    The wrappers below check every returned shape and raise DimensionError
    instead of letting numpy broadcast a mismatch.
    """

    def __init__(self, transition, measure, policy, running_cost,
                 process_noise, measurement_noise, prior,
                 violates=None, n=NUM_STATES, m=NUM_MEASUREMENTS, p=NUM_CONTROLS,
                 name="plant"):
        self.transition = transition
        self.measure = measure
        self.policy = policy
        self.running_cost = running_cost
        self.violates = violates
        self.n, self.m, self.p = int(n), int(m), int(p)
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.prior = prior
        self.name = name

        for label, dist, dim in (("process noise", process_noise, self.n),
                                 ("measurement noise", measurement_noise, self.m),
                                 ("prior", prior, self.n)):
            if dist.dim != dim:
                raise DimensionError(f"{self.name}: {label} has dimension {dist.dim}, expected {dim}")

        self._probe()

    def _probe(self):
        """Call every function once on a 2-column batch to fail fast on bad shapes."""
        X = np.tile(self.prior.mean[:, None], (1, 2))
        U = self.control(X)
        self.step(X, U)
        self.observe(X)
        self.cost(X, U)
        self.violated(X)

    def _check(self, label, out, shape):
        out = np.asarray(out)
        if out.shape != shape:
            raise DimensionError(f"{self.name}: {label} returned shape {out.shape}, expected {shape}")
        return out

    def _columns(self, X, dim, label):
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        if X.ndim != 2 or X.shape[0] != dim:
            raise DimensionError(f"{self.name}: {label} must be ({dim}, K), got {X.shape}")
        return X

    def step(self, X, U, W=None):
        """One transition x' = f(x, u, w). Zero noise when W is None."""
        X = self._columns(X, self.n, "state")
        K = X.shape[1]
        U = self._columns(U, self.p, "control")
        if U.shape[1] == 1 and K > 1:
            U = np.broadcast_to(U, (self.p, K))
        if W is None:
            W = np.zeros_like(X)
        W = self._columns(W, self.n, "process noise")
        return self._check("transition", self.transition(X, U, W), (self.n, K)).astype(np.float64)

    def observe(self, X, V=None):
        X = self._columns(X, self.n, "state")
        if V is None:
            V = np.zeros((self.m, X.shape[1]))
        return self._check("measure", self.measure(X, V), (self.m, X.shape[1])).astype(np.float64)

    def control(self, X):
        X = self._columns(X, self.n, "state")
        return self._check("policy", self.policy(X), (self.p, X.shape[1])).astype(np.float64)

    def cost(self, X, U):
        X = self._columns(X, self.n, "state")
        return self._check("running_cost", self.running_cost(X, U), (X.shape[1],)).astype(np.float64)

    def violated(self, X):
        X = self._columns(X, self.n, "state")
        if self.violates is None:
            return np.zeros(X.shape[1], dtype=bool)
        return self._check("violates", self.violates(X), (X.shape[1],)).astype(bool)


# =========================
# Linear 2D test plant
# =========================
def linear_transition(X, U, W):
    return A_LINEAR @ X + B_LINEAR @ U + W

def identity_measure(X, V):
    return X + V

def zero_policy(X):
    return np.zeros((NUM_CONTROLS, X.shape[1]))

def squared_norm_cost(X, U):
    return np.sum(X**2, axis=0)

def outside_state_box(X):
    return np.any((X < STATE_LIM[0]) | (X > STATE_LIM[1]), axis=0)


def linear_model():
    """Linear 2D plant, identity measurement, zero control, |x|^2 cost, box constraint."""
    return SystemModel(
        transition=linear_transition,
        measure=identity_measure,
        policy=zero_policy,
        running_cost=squared_norm_cost,
        violates=outside_state_box,
        process_noise=GaussianNoise.isotropic(NUM_STATES, process_noise_variance),
        measurement_noise=GaussianNoise.isotropic(NUM_MEASUREMENTS, measurement_noise_variance),
        prior=GaussianNoise.isotropic(NUM_STATES, prior_variance, mean=prior_mean),
        name="linear",
    )

def linear_limits():
    return SSALimits()


# =========================
# Obstacle plant
# =========================
def integrator_transition(X, U, W):
    return X + obstacle_dt * U + W

def goal_policy(X):
    return -K_GOAL * (X - R_GOAL[:, None])

def goal_cost(X, U):
    return np.sum((X - R_GOAL[:, None])**2, axis=0) + CONTROL_WEIGHT * np.sum(U**2, axis=0)

def inside_obstacle(X):
    return np.linalg.norm(X - R0[:, None], axis=0) < DMIN


def obstacle_model():
    """Single integrator steered to R_GOAL past a circular keep-out zone at R0."""
    return SystemModel(
        transition=integrator_transition,
        measure=identity_measure,
        policy=goal_policy,
        running_cost=goal_cost,
        violates=inside_obstacle,
        process_noise=GaussianNoise.isotropic(NUM_STATES, obstacle_process_variance),
        measurement_noise=GaussianNoise.isotropic(NUM_MEASUREMENTS, obstacle_measurement_variance),
        prior=GaussianNoise.isotropic(NUM_STATES, obstacle_prior_variance, mean=obstacle_prior_mean),
        name="obstacle",
    )

def obstacle_limits():
    return SSALimits(control=(CONTROL_LIM[0], CONTROL_LIM[1]))


PLANTS = {
    "linear": (linear_model, linear_limits),
    "obstacle": (obstacle_model, obstacle_limits),
}
