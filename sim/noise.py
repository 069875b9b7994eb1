import numpy as np
from scipy.linalg import LinAlgError, cholesky

from config import ConfigurationError


class GaussianNoise:
    """
    Multivariate Gaussian N(mean, cov) used for process noise, measurement
    noise and the initial particle cloud.

    Samples come back column-stacked, shape (dim, K), matching the particle
    layout used everywhere else.
    """

    def __init__(self, cov, mean=None):
        cov = np.atleast_2d(np.array(cov, dtype=np.float64))
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            raise ConfigurationError(f"covariance must be square, got shape {cov.shape}")
        if not np.all(np.isfinite(cov)):
            raise ConfigurationError("covariance contains non-finite entries")
        if not np.allclose(cov, cov.T, rtol=1e-10, atol=1e-12):
            raise ConfigurationError("covariance must be symmetric")
        try:
            # cov = chol @ chol.T
            chol = cholesky(cov, lower=True)
        except LinAlgError as exc:
            raise ConfigurationError(f"covariance is not positive definite: {exc}") from exc

        dim = cov.shape[0]
        if mean is None:
            mean = np.zeros(dim)
        mean = np.array(mean, dtype=np.float64).reshape(-1)
        if mean.shape != (dim,):
            raise ConfigurationError(f"mean must have shape ({dim},), got {mean.shape}")

        self.dim = dim
        self.mean = mean
        self.cov = cov
        self.chol = chol
        for arr in (self.mean, self.cov, self.chol):
            arr.setflags(write=False)

    @classmethod
    def isotropic(cls, dim, variance, mean=None):
        """N(mean, variance * I)."""
        return cls(float(variance) * np.eye(dim), mean=mean)

    def sample(self, size, rng):
        """
        Draw i.i.d. samples.

        Args:
            size : int or tuple, number of samples (trailing shape)
            rng  : np.random.Generator

        Returns:
            (dim, *size) array
        """
        size = (size,) if np.isscalar(size) else tuple(size)
        z = rng.standard_normal(size=(self.dim,) + size)
        flat = z.reshape(self.dim, -1)
        out = self.mean[:, None] + self.chol @ flat
        return out.reshape((self.dim,) + size)

    def __repr__(self):
        return f"GaussianNoise(dim={self.dim}, mean={self.mean.tolist()}, cov={self.cov.tolist()})"
