from typing import Optional
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Symmetrizes first, then adds growing diagonal jitter until Cholesky passes.
    """
    cov = np.array(cov, dtype=float)
    n = cov.shape[0]
    cov = 0.5 * (cov + cov.T)
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(n) * jitter)
            return cov + np.eye(n) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    return cov + np.eye(n) * jitter


def pose_noise(rotation_sigma: float, translation_sigma: float) -> np.ndarray:
    """6x6 diagonal covariance in GTSAM Pose3 tangent order (rotation, translation)."""
    sig = np.array([rotation_sigma] * 3 + [translation_sigma] * 3, dtype=float)
    return np.diag(sig ** 2)


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from a square covariance."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def isotropic(dim: int, sigma: float):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    if sigma <= 0:
        raise ValueError(f"noise sigma must be positive, got {sigma}")
    return gtsam.noiseModel.Isotropic.Sigma(dim, float(sigma))


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap a base noise model with a robust kernel.

    kind: 'huber' | 'cauchy' | None
    k: tuning constant (default: Huber 1.345, Cauchy 1.0)
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build robust model")
    if not kind:
        return base
    kind = kind.lower()
    if kind == "huber":
        k = 1.345 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Huber(k)
    elif kind == "cauchy":
        k = 1.0 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Cauchy(k)
    else:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return gtsam.noiseModel.Robust.Create(loss, base)
