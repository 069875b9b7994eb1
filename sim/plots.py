import logging
import os

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation, PillowWriter

logger = logging.getLogger(__name__)


def circle_shape(center, r, num=500):
    """Points (x, y) on a circle of radius r around center."""
    th = np.linspace(0.0, 2.0 * np.pi, num)
    return center[0] + r * np.sin(th), center[1] + r * np.cos(th)

def _draw_zones(ax, obstacle=None, goal=None):
    """obstacle / goal are (center, radius) pairs or None."""
    if obstacle is not None:
        xs, ys = circle_shape(*obstacle)
        ax.fill(xs, ys, facecolor='red', alpha=0.5, linestyle='--', edgecolor='black',
                linewidth=0.5, zorder=1, label='keep-out')
    if goal is not None:
        xs, ys = circle_shape(*goal)
        ax.fill(xs, ys, facecolor='green', alpha=0.5, edgecolor='black', linewidth=0.5,
                zorder=1, label='goal')

def _cloud_limits(result, pad_frac=0.05):
    pts = np.concatenate([result.particles[:, 0:2, :].transpose(1, 0, 2).reshape(2, -1),
                          result.true_states[:, 0:2].T], axis=1)
    pts = pts[:, np.all(np.isfinite(pts), axis=0)]
    mn, mx = pts.min(axis=1), pts.max(axis=1)
    pad = pad_frac * (mx - mn + 1e-6)
    return (mn[0] - pad[0], mx[0] + pad[0]), (mn[1] - pad[1], mx[1] + pad[1])


def plot_selection_step(result, step, output_dir='sim_results', obstacle=None, goal=None,
                        dpi=150, show=False):
    """
    Scatter the particle cloud at one step with the selected candidate state
    and the true state. Only the first two state dimensions are drawn.

    Saves:
        <output_dir>/selection_step<step>.jpg
    """
    os.makedirs(output_dir, exist_ok=True)
    cloud = result.particles[step]        # (n, L)
    mask = result.feasibility_masks[step] # (L,)
    xstar = result.selected_states[step]
    truth = result.true_states[step]

    fig, ax = plt.subplots(figsize=(6, 6))
    _draw_zones(ax, obstacle, goal)
    ax.scatter(cloud[0, mask], cloud[1, mask], s=1.0, c='black', label='feasible particles', zorder=2)
    if np.any(~mask):
        ax.scatter(cloud[0, ~mask], cloud[1, ~mask], s=1.0, c='orange', label='infeasible particles', zorder=2)
    ax.scatter([truth[0]], [truth[1]], marker='*', s=120, c='cyan', edgecolor='k', label='truth', zorder=4)
    ax.scatter([xstar[0]], [xstar[1]], s=40, c='blue', label=r'candidate state $x^\star$', zorder=5)

    status = "" if result.feasible[step] else " (fallback)"
    ax.set_title(f'Step {step}{status}  violation rate={result.violation_rate[step]:.3f}')
    ax.set_xlabel('x'); ax.set_ylabel('y')
    ax.set_aspect('equal', adjustable='datalim')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='upper left', fontsize=8)
    fig.tight_layout()

    out_path = os.path.join(output_dir, f'selection_step{step}.jpg')
    fig.savefig(out_path, dpi=dpi)
    if show:
        plt.show()
    else:
        plt.close(fig)
    return out_path


def plot_violation_rate(results, alpha, output_dir='sim_results', dpi=150, show=False):
    """
    Selected-particle violation rate vs step for every run, with the
    threshold alpha. Fallback steps are marked with an 'x'.

    Saves:
        <output_dir>/violation_rate.jpg
    """
    if not isinstance(results, (list, tuple)):
        results = [results]
    os.makedirs(output_dir, exist_ok=True)

    plt.figure(figsize=(9, 4))
    for r, res in enumerate(results):
        k = np.arange(res.steps_completed)
        plt.plot(k, res.violation_rate, linewidth=1.0, alpha=0.8)
        fb = ~res.feasible
        if np.any(fb):
            plt.scatter(k[fb], res.violation_rate[fb], marker='x', color='red', zorder=5)

    plt.axhline(alpha, color='k', linestyle='--', linewidth=1.0, label=r'$\alpha$')
    plt.xlabel('Step')
    plt.ylabel('Violation rate')
    plt.title(f'Selected-state violation rate  (Num Runs={len(results)})')
    plt.grid(True, alpha=0.3)
    plt.legend()
    plt.tight_layout()

    out_path = os.path.join(output_dir, 'violation_rate.jpg')
    plt.savefig(out_path, dpi=dpi)
    if show:
        plt.show()
    else:
        plt.close()
    return out_path


def plot_particles_vs_time(result, output_dir='sim_results', state_labels=None, dpi=150, show=False):
    """
    For each state dimension, scatter the particle cloud over time with the
    truth (dashed), the filter estimate and the selected state overlaid.

    Saves:
        <output_dir>/state_<label>_particles.jpg
    """
    os.makedirs(output_dir, exist_ok=True)
    K, n, L = result.particles.shape
    if state_labels is None:
        state_labels = [f"s{i}" for i in range(n)]
    elif len(state_labels) != n:
        raise ValueError(f"state_labels length {len(state_labels)} != n {n}")

    k = np.arange(K)
    paths = []
    for s_idx, label in enumerate(state_labels):
        plt.figure(figsize=(9, 5))
        plt.scatter(np.repeat(k, L), result.particles[:, s_idx, :].reshape(-1),
                    s=2.0, c='grey', alpha=0.2)
        plt.plot(k, result.true_states[:K, s_idx], linestyle='--', color='cyan', linewidth=1.2,
                 label=f'{label} truth')
        plt.plot(k, result.estimates[:, s_idx], color='red', linewidth=1.0, label=f'{label} estimate')
        plt.plot(k, result.selected_states[:, s_idx], color='blue', marker='o', markersize=3,
                 linewidth=0.8, label=f'{label} selected')
        plt.xlabel('Step')
        plt.ylabel(f'{label}(k)')
        plt.title(f'Particle cloud vs time ({label})')
        plt.legend(loc='upper right')
        plt.grid(True, alpha=0.3)
        plt.tight_layout()

        out_path = os.path.join(output_dir, f'state_{label}_particles.jpg')
        plt.savefig(out_path, dpi=dpi)
        paths.append(out_path)
        if show:
            plt.show()
        else:
            plt.close()
    return paths


def animate_selection(result, outfile='ssa.gif', obstacle=None, goal=None, fps=10):
    """Animate the particle cloud and the selected candidate state, one frame per step."""
    fig, ax = plt.subplots(figsize=(6, 6))
    xlim, ylim = _cloud_limits(result)

    def draw(k):
        ax.clear()
        _draw_zones(ax, obstacle, goal)
        cloud = result.particles[k]
        ax.scatter(cloud[0], cloud[1], s=1.0, c='black', zorder=2)
        ax.scatter([result.selected_states[k, 0]], [result.selected_states[k, 1]], s=30, c='blue',
                   label=r'candidate state $x^\star$', zorder=5)
        ax.set_xlim(*xlim)
        ax.set_ylim(*ylim)
        ax.set_title(f'Step {k}')
        ax.legend(loc='upper left')
        return ax,

    anim = FuncAnimation(fig, draw, frames=result.steps_completed, blit=False)
    anim.save(outfile, writer=PillowWriter(fps=fps))
    plt.close(fig)
    logger.info("wrote animation %s", outfile)
    return outfile
