from typing import Dict, Sequence
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt


def _as_xyz(points: Sequence) -> np.ndarray:
    xyz = np.asarray(points, dtype=float)
    return xyz.reshape(-1, 3)


def plot_positions_xy(groups: Dict[str, Sequence], path_png: str, title: str = "Positions (XY)"):
    """Scatter each named group of 3D points in the XY plane."""
    plt.figure(figsize=(8, 6))
    for label, pts in groups.items():
        xyz = _as_xyz(pts)
        if len(xyz):
            plt.scatter(xyz[:, 0], xyz[:, 1], label=label, s=12)
    plt.axis('equal')
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    if groups:
        plt.legend()
    plt.title(title)
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_positions_3d(groups: Dict[str, Sequence], path_png: str, title: str = "Positions (3D)"):
    from mpl_toolkits.mplot3d import Axes3D  # noqa
    fig = plt.figure(figsize=(8, 6))
    ax = fig.add_subplot(111, projection='3d')
    for label, pts in groups.items():
        xyz = _as_xyz(pts)
        if len(xyz):
            ax.scatter(xyz[:, 0], xyz[:, 1], xyz[:, 2], label=label, s=12)
    ax.set_xlabel("x [m]"); ax.set_ylabel("y [m]"); ax.set_zlabel("z [m]")
    if groups:
        ax.legend()
    ax.set_title(title)
    fig.tight_layout()
    fig.savefig(path_png, dpi=150)
    plt.close(fig)
