import numpy as np
import pytest

from config import DegenerateLikelihoodError, DimensionError, SSAConfig
from particle_filter import (
    ParticleFilter,
    ParticleSet,
    effective_sample_size,
    estimate_state,
    inverse_cdf_resample,
    jitter_particles,
    measurement_update,
    resample,
    time_update,
)


def _cloud(rng, L=300):
    X = rng.normal(size=(2, L))
    w = rng.random(L)
    return ParticleSet(X, w / w.sum())


def test_particle_set_weight_length_checked():
    with pytest.raises(DimensionError):
        ParticleSet(np.zeros((2, 5)), np.ones(4) / 4)


def test_resample_only_copies(rng):
    ps = _cloud(rng)
    out = resample(ps, rng)
    assert out.particles.shape == ps.particles.shape
    assert np.allclose(out.weights, 1.0 / ps.size)
    for col in out.particles.T:
        assert np.any(np.all(ps.particles == col[:, None], axis=0))


def test_resample_tolerates_drift(rng):
    w = np.full(100, 1.0 / 100) * (1 + 1e-9)
    idx = inverse_cdf_resample(w, rng)
    assert idx.shape == (100,)
    assert idx.min() >= 0 and idx.max() < 100


def test_resample_point_mass(rng):
    w = np.zeros(50)
    w[17] = 1.0
    assert np.all(inverse_cdf_resample(w, rng) == 17)


def test_resample_zero_weights_raises(rng):
    with pytest.raises(DegenerateLikelihoodError):
        inverse_cdf_resample(np.zeros(10), rng)


def test_measurement_update_normalises(linear, rng):
    X = linear.prior.sample(500, rng)
    w = measurement_update(linear, X, np.full(500, 1 / 500), linear.prior.mean + 0.3)
    assert np.isclose(w.sum(), 1.0)
    assert np.all(w >= 0)


def test_measurement_update_prefers_close_particles(linear):
    X = np.array([[0.0, 5.0], [0.0, 5.0]])
    w = measurement_update(linear, X, np.full(2, 0.5), [0.1, -0.1])
    assert w[0] > w[1]


def test_measurement_update_far_observation_is_degenerate(linear, rng):
    X = linear.prior.sample(500, rng)
    far = linear.prior.mean + 100 * np.sqrt(0.5) * np.ones(2)
    with pytest.raises(DegenerateLikelihoodError) as excinfo:
        measurement_update(linear, X, np.full(500, 1 / 500), far)
    assert excinfo.value.likelihood_sum == 0.0


def test_measurement_wrong_dimension(linear, rng):
    X = linear.prior.sample(10, rng)
    with pytest.raises(DimensionError):
        measurement_update(linear, X, np.full(10, 0.1), [1.0, 2.0, 3.0])


def test_time_update_order_independent(linear, rng):
    X = rng.normal(size=(2, 64))
    W = rng.normal(size=(2, 64))
    u = np.array([0.3, -0.2])
    perm = rng.permutation(64)
    direct = time_update(linear, X, u, W)
    permuted = time_update(linear, X[:, perm], u, W[:, perm])
    assert np.allclose(permuted, direct[:, perm])


def test_time_update_noise_shape_checked(linear, rng):
    with pytest.raises(DimensionError):
        time_update(linear, np.zeros((2, 5)), np.zeros(2), np.zeros((2, 4)))


def test_effective_sample_size():
    assert np.isclose(effective_sample_size(np.full(40, 1 / 40)), 40.0)
    w = np.zeros(40)
    w[0] = 1.0
    assert np.isclose(effective_sample_size(w), 1.0)


def test_estimate_state_mean_and_median():
    ps = ParticleSet(np.array([[0.0, 1.0, 10.0]]), np.array([0.25, 0.5, 0.25]))
    assert np.isclose(estimate_state(ps)[0], 3.0)
    assert np.isclose(estimate_state(ps, median=True)[0], 1.0)


def test_jitter_moves_particles(rng):
    X = np.zeros((2, 1000))
    out = jitter_particles(X, 0.5 * np.eye(2), kappa=1.0, rng=rng)
    assert np.allclose(out.std(axis=1), np.sqrt(0.5), atol=0.05)


def test_filter_rejects_mismatched_config(linear, rng):
    with pytest.raises(DimensionError):
        ParticleFilter(linear, SSAConfig(n=3, m=2, p=2, L=10), rng)


def test_propagate_resamples(linear, small_config, rng):
    pf = ParticleFilter(linear, small_config, rng)
    step = pf.propagate(np.zeros(2), linear.prior.mean)
    assert not step.degenerate
    assert pf.particles.shape == (2, small_config.L)
    assert np.allclose(pf.weights, 1.0 / small_config.L)
    assert step.ess <= small_config.L + 1e-9


def test_propagate_degenerate_keeps_finite_weights(linear, small_config, rng, caplog):
    pf = ParticleFilter(linear, small_config, rng)
    far = linear.prior.mean + 100 * np.sqrt(0.5) * np.ones(2)
    with caplog.at_level("WARNING", logger="particle_filter"):
        step = pf.propagate(np.zeros(2), far)
    assert step.degenerate
    assert not step.consistent
    assert np.all(np.isfinite(pf.weights))
    assert np.isclose(pf.weights.sum(), 1.0)
    assert np.all(np.isfinite(pf.particles))
    assert "degenerate likelihood" in caplog.text


def test_snapshot_is_read_only(linear, small_config, rng):
    pf = ParticleFilter(linear, small_config, rng)
    snap = pf.snapshot()
    with pytest.raises(ValueError):
        snap.particles[0, 0] = 1.0
    pf.propagate(np.zeros(2), linear.prior.mean)
    assert snap.particles is not pf.particles
