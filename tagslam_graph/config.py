from dataclasses import dataclass
from typing import Optional


@dataclass
class GraphConfig:
    pixel_noise: float = 1.0              # isotropic reprojection sigma [px]
    max_iterations: int = 100
    absolute_error_tol: float = 1e-10
    relative_error_tol: float = 0.0       # disabled: stop on absolute decrease or the iteration cap
    verbosity: str = "SILENT"             # LM verbosity, e.g. "TERMINATION"
    robust_kind: Optional[str] = None     # 'huber' | 'cauchy' | None, applied to pixel noise
    robust_k: Optional[float] = None
    default_rotation_sigma: float = 0.01      # [rad], for priors given without covariance
    default_translation_sigma: float = 0.005  # [m]
