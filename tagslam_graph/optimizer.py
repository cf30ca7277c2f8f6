from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
import logging
import time

try:
    import gtsam
except Exception:
    gtsam = None

from .config import GraphConfig

if TYPE_CHECKING:
    from tagslam_common.kpi_logging import KPILogger

logger = logging.getLogger("tagslam.optimizer")


@dataclass
class OptimizationResult:
    values: "gtsam.Values"
    error: float              # final cost as reported by the solver
    normalized_error: float   # error per reprojection factor
    iterations: int
    duration_s: float = 0.0


def make_params(config: GraphConfig) -> "gtsam.LevenbergMarquardtParams":
    params = gtsam.LevenbergMarquardtParams()
    params.setMaxIterations(config.max_iterations)
    params.setAbsoluteErrorTol(config.absolute_error_tol)
    params.setRelativeErrorTol(config.relative_error_tol)
    params.setVerbosity(config.verbosity)
    return params


class BatchOptimizer:
    """Levenberg-Marquardt batch solve over the whole graph.

    Termination is driven by the absolute error decrease and the iteration
    cap only; the relative tolerance is disabled by default. The final cost is
    divided by the number of reprojection factors so that solutions of
    differently sized problems can be compared.
    """

    def __init__(self, config: GraphConfig = None, kpi: Optional["KPILogger"] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot optimize")
        self.config = config or GraphConfig()
        self.kpi = kpi
        self._runs = 0

    def solve(self, graph: "gtsam.NonlinearFactorGraph", initial: "gtsam.Values",
              num_reprojection: int) -> OptimizationResult:
        self._runs += 1
        if self.kpi:
            self.kpi.optimization_start(self._runs, graph.size(), initial.size())
        ni = 1.0 / num_reprojection if num_reprojection > 0 else 1.0
        start = time.perf_counter()
        if graph.size() == 0:
            logger.warning("empty factor graph; nothing to optimize")
            result = OptimizationResult(gtsam.Values(initial), 0.0, 0.0, 0, 0.0)
        else:
            opt = gtsam.LevenbergMarquardtOptimizer(graph, initial, make_params(self.config))
            values = opt.optimize()
            error = float(opt.error())
            result = OptimizationResult(values, error, error * ni, int(opt.iterations()),
                                        time.perf_counter() - start)
        logger.info("optimizer error: %.6g (normalized %.6g) after %d iterations",
                    result.error, result.normalized_error, result.iterations)
        if self.kpi:
            self.kpi.optimization_end(self._runs, result.duration_s,
                                      updated_keys=result.values.size(),
                                      normalized_error=result.normalized_error,
                                      iterations=result.iterations)
        return result
