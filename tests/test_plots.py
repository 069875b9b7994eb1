import numpy as np
import pytest

from config import SSAConfig
from monte import run_simulation
import plots
import system_model


@pytest.fixture(scope="module")
def result():
    model = system_model.obstacle_model()
    cfg = SSAConfig(N=3, M=10, L=100, limits=system_model.obstacle_limits(), seed=12)
    return run_simulation(model, cfg, steps=3)


def test_circle_shape_radius():
    xs, ys = plots.circle_shape(np.array([1.0, -1.0]), 2.0)
    assert np.allclose(np.hypot(xs - 1.0, ys + 1.0), 2.0)


def test_plot_selection_step(result, tmp_path):
    path = plots.plot_selection_step(result, 1, output_dir=str(tmp_path),
                                     obstacle=(system_model.R0, system_model.DMIN),
                                     goal=(system_model.R_GOAL, system_model.GOAL_RADIUS))
    assert (tmp_path / "selection_step1.jpg").exists()
    assert path.endswith("selection_step1.jpg")


def test_plot_violation_rate(result, tmp_path):
    plots.plot_violation_rate([result, result], 0.15, output_dir=str(tmp_path))
    assert (tmp_path / "violation_rate.jpg").exists()


def test_plot_particles_vs_time(result, tmp_path):
    paths = plots.plot_particles_vs_time(result, output_dir=str(tmp_path), state_labels=["x", "y"])
    assert len(paths) == 2
    with pytest.raises(ValueError):
        plots.plot_particles_vs_time(result, output_dir=str(tmp_path), state_labels=["x"])


def test_animate_selection(result, tmp_path):
    out = plots.animate_selection(result, outfile=str(tmp_path / "ssa.gif"),
                                  obstacle=(system_model.R0, system_model.DMIN))
    assert (tmp_path / "ssa.gif").exists()
    assert out.endswith("ssa.gif")
