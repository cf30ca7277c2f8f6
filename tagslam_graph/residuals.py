"""Differentiable residuals for the tag graph.

A residual exposes its value and, on request, one Jacobian per pose argument
in GTSAM's Pose3 tangent convention (rotation first). Distance and position
residuals use closed-form derivatives; the reprojection residual differentiates
numerically through ``Pose3.retract`` so it works with any distortion model.

Every residual can be wrapped as a ``gtsam.CustomFactor``. Arguments that
resolve to the same key (two corners on one body, say) are merged into a
single factor key and their Jacobians summed.
"""
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .keys import VariableKey

logger = logging.getLogger("tagslam.residuals")

NUMERICAL_STEP = 1e-6


def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = float(v[0]), float(v[1]), float(v[2])
    return np.array([[0.0, -z, y],
                     [z, 0.0, -x],
                     [-y, x, 0.0]])


def distance(p1, p2, H1: Optional[np.ndarray] = None, H2: Optional[np.ndarray] = None) -> float:
    """Euclidean distance |p1 - p2|.

    ``H1``/``H2`` are optional 1x3 arrays filled in place with the derivative
    with respect to each point: the unit difference vector, sign flipped for p2.
    """
    d = np.asarray(p1, dtype=float) - np.asarray(p2, dtype=float)
    r = float(np.sqrt(d @ d))
    u = d / r if r > 1e-12 else np.zeros(3)
    if H1 is not None:
        H1[...] = u.reshape(H1.shape)
    if H2 is not None:
        H2[...] = -u.reshape(H2.shape)
    return r


def projection_length(p, n, Hp: Optional[np.ndarray] = None, Hn: Optional[np.ndarray] = None) -> float:
    """Dot product p . n, with Hp = n and Hn = p."""
    p = np.asarray(p, dtype=float)
    n = np.asarray(n, dtype=float)
    if Hp is not None:
        Hp[...] = n.reshape(Hp.shape)
    if Hn is not None:
        Hn[...] = p.reshape(Hn.shape)
    return float(p @ n)


def transform_from_jacobian(pose, point) -> np.ndarray:
    """d(pose * point) / d(pose), 3x6."""
    R = pose.rotation().matrix()
    return R @ np.hstack([-skew(point), np.eye(3)])


def world_point(T_w_b, T_b_o, X_o, want_jacobians: bool = False):
    """X_w = T_w_b * T_b_o * X_o, optionally with 3x6 Jacobians for both poses."""
    X_o = np.asarray(X_o, dtype=float)
    X_b = np.asarray(T_b_o.transformFrom(X_o), dtype=float)
    X_w = np.asarray(T_w_b.transformFrom(X_b), dtype=float)
    if not want_jacobians:
        return X_w, None, None
    H_wb = transform_from_jacobian(T_w_b, X_b)
    H_bo = T_w_b.rotation().matrix() @ transform_from_jacobian(T_b_o, X_o)
    return X_w, H_wb, H_bo


def numerical_jacobian(fn: Callable[[List], np.ndarray], poses: Sequence,
                       h: float = NUMERICAL_STEP) -> List[np.ndarray]:
    """Central-difference Jacobians of ``fn(poses)`` w.r.t. each pose's tangent space."""
    poses = list(poses)
    out = []
    for i, pose in enumerate(poses):
        cols = []
        for j in range(6):
            d = np.zeros(6)
            d[j] = h
            plus = poses[:i] + [pose.retract(d)] + poses[i + 1:]
            minus = poses[:i] + [pose.retract(-d)] + poses[i + 1:]
            cols.append((np.asarray(fn(plus)) - np.asarray(fn(minus))) / (2.0 * h))
        out.append(np.column_stack(cols))
    return out


class DifferentiableResidual:
    """Residual over Pose3 arguments: value plus requested partials."""

    dim = 1

    def __init__(self, arg_keys: Sequence[VariableKey]):
        self.arg_keys = list(arg_keys)
        self.keys: List[VariableKey] = []
        self._slot = []
        for k in self.arg_keys:
            if k not in self.keys:
                self.keys.append(k)
            self._slot.append(self.keys.index(k))

    def evaluate(self, poses: Sequence, want_jacobians: bool = False
                 ) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        raise NotImplementedError

    def evaluate_values(self, values: "gtsam.Values", want_jacobians: bool = False):
        """Evaluate at ``values``, returning one Jacobian per unique key."""
        unique = [values.atPose3(k.to_gtsam()) for k in self.keys]
        poses = [unique[s] for s in self._slot]
        r, H = self.evaluate(poses, want_jacobians)
        if H is None:
            return r, None
        merged = [np.zeros((self.dim, 6)) for _ in self.keys]
        for s, J in zip(self._slot, H):
            merged[s] += J
        return r, merged

    def _error(self, this, values, jacobians):
        r, H = self.evaluate_values(values, jacobians is not None)
        if jacobians is not None:
            for i, J in enumerate(H):
                jacobians[i] = J
        return r

    def as_factor(self, noise):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build factor")
        keys = gtsam.KeyVector([k.to_gtsam() for k in self.keys])
        return gtsam.CustomFactor(noise, keys, self._error)


class DistanceResidual(DifferentiableResidual):
    """|X_w1 - X_w2| - measured, args (T_w_b1, T_b1_o, T_w_b2, T_b2_o)."""

    dim = 1

    def __init__(self, T_w_b1: VariableKey, T_b1_o: VariableKey, X_o1,
                 T_w_b2: VariableKey, T_b2_o: VariableKey, X_o2, measured: float):
        super().__init__([T_w_b1, T_b1_o, T_w_b2, T_b2_o])
        self.X_o1 = np.asarray(X_o1, dtype=float)
        self.X_o2 = np.asarray(X_o2, dtype=float)
        self.measured = float(measured)

    def evaluate(self, poses, want_jacobians=False):
        T_w_b1, T_b1_o, T_w_b2, T_b2_o = poses
        X1, H_wb1, H_bo1 = world_point(T_w_b1, T_b1_o, self.X_o1, want_jacobians)
        X2, H_wb2, H_bo2 = world_point(T_w_b2, T_b2_o, self.X_o2, want_jacobians)
        if not want_jacobians:
            return np.array([distance(X1, X2) - self.measured]), None
        D1 = np.zeros((1, 3))
        D2 = np.zeros((1, 3))
        r = distance(X1, X2, D1, D2)
        return (np.array([r - self.measured]),
                [D1 @ H_wb1, D1 @ H_bo1, D2 @ H_wb2, D2 @ H_bo2])


class PositionResidual(DifferentiableResidual):
    """X_w . direction - measured, args (T_w_b, T_b_o)."""

    dim = 1

    def __init__(self, T_w_b: VariableKey, T_b_o: VariableKey, X_o, direction, measured: float):
        super().__init__([T_w_b, T_b_o])
        self.X_o = np.asarray(X_o, dtype=float)
        self.direction = np.asarray(direction, dtype=float).reshape(3)
        self.measured = float(measured)

    def evaluate(self, poses, want_jacobians=False):
        T_w_b, T_b_o = poses
        X, H_wb, H_bo = world_point(T_w_b, T_b_o, self.X_o, want_jacobians)
        if not want_jacobians:
            return np.array([projection_length(X, self.direction) - self.measured]), None
        Dp = np.zeros((1, 3))
        r = projection_length(X, self.direction, Dp)
        return np.array([r - self.measured]), [Dp @ H_wb, Dp @ H_bo]


class ReprojectionResidual(DifferentiableResidual):
    """Predicted minus observed pixel for one tag corner, args (T_w_c, T_w_b, T_b_o).

    X_w = T_w_b * T_b_o * X_o is moved into the camera frame, projected to
    normalized coordinates and mapped to pixels by the camera's distortion
    model. Points at or behind the camera give a constant 2*fx residual with
    zero Jacobians, as GTSAM's projection factors do.
    """

    dim = 2

    def __init__(self, T_w_c: VariableKey, T_w_b: VariableKey, T_b_o: VariableKey,
                 camera, X_o, measured):
        super().__init__([T_w_c, T_w_b, T_b_o])
        self.camera = camera
        self.X_o = np.asarray(X_o, dtype=float)
        self.measured = np.asarray(measured, dtype=float).reshape(2)

    def camera_point(self, poses) -> np.ndarray:
        T_w_c, T_w_b, T_b_o = poses
        X_w, _, _ = world_point(T_w_b, T_b_o, self.X_o)
        return np.asarray(T_w_c.transformTo(X_w), dtype=float)

    def predict(self, poses) -> np.ndarray:
        X_c = self.camera_point(poses)
        xp = X_c[:2] / X_c[2]
        return self.camera.uncalibrate(xp)

    def evaluate(self, poses, want_jacobians=False):
        poses = list(poses)
        if self.camera_point(poses)[2] <= 1e-9:
            logger.debug("corner behind camera %s", self.camera.name or self.camera.index)
            r = np.full(2, 2.0 * self.camera.fx())
            return r, ([np.zeros((2, 6)) for _ in poses] if want_jacobians else None)
        r = self.predict(poses) - self.measured
        if not want_jacobians:
            return r, None
        return r, numerical_jacobian(self.predict, poses)
