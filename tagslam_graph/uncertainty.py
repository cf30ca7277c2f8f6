from typing import Optional
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .keys import VariableKey

logger = logging.getLogger("tagslam.uncertainty")


class UncertaintyEngine:
    """Marginal covariances at a solved linearization point.

    The engine remembers the graph revision it was computed at; queries made
    against any other revision report "unavailable" (None).
    """

    def __init__(self):
        self._marginals = None
        self._keys = set()
        self._revision: Optional[int] = None

    def compute(self, graph: "gtsam.NonlinearFactorGraph", values: "gtsam.Values", revision: int) -> None:
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot compute marginals")
        self._marginals = gtsam.Marginals(graph, values)
        self._keys = set(int(k) for k in values.keys())
        self._revision = revision

    def invalidate(self) -> None:
        self._marginals = None
        self._keys = set()
        self._revision = None

    def available(self, revision: int) -> bool:
        return self._marginals is not None and self._revision == revision

    def marginal_covariance(self, key: VariableKey, revision: int) -> Optional[np.ndarray]:
        if not self.available(revision) or key.to_gtsam() not in self._keys:
            return None
        return np.asarray(self._marginals.marginalCovariance(key.to_gtsam()), dtype=float)
