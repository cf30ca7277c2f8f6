import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from tagslam_graph.noise import gaussian_from_covariance, isotropic, make_spd, pose_noise, robustify


def test_pose_noise_is_rotation_first():
    cov = pose_noise(0.1, 0.2)
    np.testing.assert_allclose(np.diag(cov), [0.01] * 3 + [0.04] * 3)


def test_make_spd_fixes_semidefinite():
    cov = make_spd(np.zeros((3, 3)))
    np.linalg.cholesky(cov)
    np.testing.assert_allclose(cov, cov.T)


def test_gaussian_from_covariance_dimension():
    model = gaussian_from_covariance(pose_noise(0.01, 0.01))
    assert model.dim() == 6


def test_isotropic_rejects_non_positive_sigma():
    assert isotropic(2, 1.5).sigma() == pytest.approx(1.5)
    with pytest.raises(ValueError):
        isotropic(1, -1.0)


def test_robustify():
    base = isotropic(2, 1.0)
    assert robustify(base, None) is base
    assert isinstance(robustify(base, "cauchy"), gtsam.noiseModel.Robust)
    with pytest.raises(ValueError):
        robustify(base, "tukey-ish")
