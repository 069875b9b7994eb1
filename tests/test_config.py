import dataclasses
import json

import numpy as np
import pytest

from config import ConfigurationError, SSAConfig, SSALimits, load_config


@pytest.mark.parametrize("field,value", [
    ("N", 0), ("N", 1), ("M", 0), ("L", -3), ("n", 0), ("chunk_size", 0), ("M", 2.5),
])
def test_rejects_non_positive_sizes(field, value):
    with pytest.raises(ConfigurationError):
        SSAConfig(**{field: value})


@pytest.mark.parametrize("alpha", [-0.1, 1.5])
def test_rejects_alpha_out_of_range(alpha):
    with pytest.raises(ConfigurationError):
        SSAConfig(alpha=alpha)


def test_config_is_immutable():
    cfg = SSAConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.N = 10


def test_limits_resolved_per_dimension():
    cfg = SSAConfig(limits=SSALimits(state=(-10.0, 10.0)))
    lo, hi = cfg.limits.state
    assert lo == (-10.0, -10.0) and hi == (10.0, 10.0)
    assert cfg.limits.control is None
    X = np.array([[0.0, 11.0, -10.0], [0.0, 0.0, 10.0]])
    assert cfg.limits.state_violation(X).tolist() == [False, True, False]


def test_limits_reject_inverted_box():
    with pytest.raises(ConfigurationError):
        SSAConfig(limits=SSALimits(control=([1.0, 1.0], [0.0, 2.0])))


def test_control_violation_unbounded():
    limits = SSALimits().resolved(2, 2)
    assert not limits.control_violation(np.full((2, 4), 1e9)).any()


def test_load_config(tmp_path):
    path = tmp_path / "ssa.json"
    path.write_text(json.dumps({
        "ssa": {"N": 6, "M": 50, "L": 300, "alpha": 0.1},
        "limits": {"state": [[-10, -10], [10, 10]]},
    }))
    cfg = load_config(path)
    assert (cfg.N, cfg.M, cfg.L, cfg.alpha) == (6, 50, 300, 0.1)
    assert np.allclose(cfg.limits.state[1], [10.0, 10.0])


def test_load_config_unknown_key(tmp_path):
    path = tmp_path / "ssa.json"
    path.write_text(json.dumps({"ssa": {"horizon": 5}}))
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_load_config_bad_json(tmp_path):
    path = tmp_path / "ssa.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_configs_compare_and_hash_by_value():
    a = SSAConfig(limits=SSALimits(state=(-1, 1)))
    b = SSAConfig(limits=SSALimits(state=(-1, 1)))
    assert a == b
    assert hash(a) == hash(b)
    assert a != SSAConfig(limits=SSALimits(state=(-2, 1)))
    assert a != SSAConfig(limits=SSALimits(control=(-1, 1)))


def test_load_config_on_base(tmp_path):
    base = SSAConfig(limits=SSALimits(state=(-10, 10), control=(-2, 2)), seed=69)
    path = tmp_path / "ssa.json"
    path.write_text(json.dumps({"ssa": {"L": 40}, "limits": {"state": [-5, 5]}}))
    cfg = load_config(path, base=base)
    assert cfg.L == 40 and cfg.seed == 69
    assert cfg.limits.state == ((-5.0, -5.0), (5.0, 5.0))
    assert cfg.limits.control == ((-2.0, -2.0), (2.0, 2.0))
