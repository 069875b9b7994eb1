import numpy as np
import pytest

from config import DimensionError
from noise import GaussianNoise
import system_model
from system_model import SystemModel


def _model(**overrides):
    kwargs = dict(
        transition=system_model.linear_transition,
        measure=system_model.identity_measure,
        policy=system_model.zero_policy,
        running_cost=system_model.squared_norm_cost,
        violates=system_model.outside_state_box,
        process_noise=GaussianNoise.isotropic(2, 0.5),
        measurement_noise=GaussianNoise.isotropic(2, 0.5),
        prior=GaussianNoise.isotropic(2, 0.5),
    )
    kwargs.update(overrides)
    return SystemModel(**kwargs)


def test_transition_shape_mismatch_fails_fast():
    with pytest.raises(DimensionError):
        _model(transition=lambda X, U, W: np.vstack([X, X]))


def test_cost_shape_mismatch_fails_fast():
    with pytest.raises(DimensionError):
        _model(running_cost=lambda X, U: np.sum(X**2, axis=0, keepdims=True))


def test_noise_dimension_mismatch():
    with pytest.raises(DimensionError):
        _model(measurement_noise=GaussianNoise.isotropic(3, 0.5))


def test_step_broadcasts_single_control(linear):
    X = np.array([[1.0, 2.0, 3.0], [0.0, 1.0, -1.0]])
    out = linear.step(X, np.zeros(2))
    assert np.allclose(out, system_model.A_LINEAR @ X)


def test_step_rejects_wrong_state_rows(linear):
    with pytest.raises(DimensionError):
        linear.step(np.zeros((3, 4)), np.zeros(2))


def test_violates_box(linear):
    X = np.array([[0.0, 10.5, -3.0], [0.0, 0.0, -10.01]])
    assert linear.violated(X).tolist() == [False, True, True]


def test_obstacle_model_policy_points_at_goal():
    model = system_model.obstacle_model()
    U = model.control(np.zeros((2, 1)))
    assert np.allclose(U[:, 0], system_model.K_GOAL * system_model.R_GOAL)
    assert model.violated(system_model.R0[:, None]).tolist() == [True]
