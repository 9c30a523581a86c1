"""
Configuration-driven wrapper around gradient-based local optimizers.

An optimizer is created from a configuration (algorithm name plus optional
tolerance and budget knobs) and then minimizes a callback that computes the
objective and fills its gradient in place. Algorithm names follow the NLopt
gradient-based family; each is run with the matching scipy.optimize method,
while the stopping rules (evaluation budget, wall time, parameter and
function-value tolerances) are applied uniformly with NLopt semantics.
"""

import numpy as np
from scipy.optimize import minimize
from typing import Any, Callable, Dict, Mapping, Optional, Union
from dataclasses import dataclass, fields
from enum import Enum
import time
import warnings

from .packing import DimensionMismatchError


class OptimizerConfigError(ValueError):
    """Raised when an optimizer configuration cannot be applied."""


class UnsupportedAlgorithm(OptimizerConfigError):
    """Raised for an algorithm name outside the supported set."""


class OptimizerStatus(Enum):
    """Termination status, numbered as NLopt result codes."""
    FAILURE = -1
    INVALID_ARGS = -2
    OUT_OF_MEMORY = -3
    ROUNDOFF_LIMITED = -4
    FORCED_STOP = -5
    SUCCESS = 1
    STOPVAL_REACHED = 2
    FTOL_REACHED = 3
    XTOL_REACHED = 4
    MAXEVAL_REACHED = 5
    MAXTIME_REACHED = 6

    @property
    def is_success(self) -> bool:
        return self.value > 0


# Supported algorithm names and the scipy method running each of them
SUPPORTED_ALGORITHMS: Dict[str, str] = {
    "LBFGS_NOCEDAL": "L-BFGS-B",
    "LBFGS": "L-BFGS-B",
    "VAR1": "BFGS",
    "VAR2": "BFGS",
    "TNEWTON": "TNC",
    "TNEWTON_RESTART": "TNC",
    "TNEWTON_PRECOND": "TNC",
    "TNEWTON_PRECOND_RESTART": "TNC",
    "MMA": "SLSQP",
    "CCSAQ": "SLSQP",
}


def algorithm_method(name: str) -> str:
    """Return the scipy method for algorithm ``name``, or raise UnsupportedAlgorithm."""
    try:
        return SUPPORTED_ALGORITHMS[name]
    except (KeyError, TypeError):
        raise UnsupportedAlgorithm(
            f'Unsupported algorithm name: "{name}"\n'
            f"Supported: {' '.join(SUPPORTED_ALGORITHMS)}") from None


@dataclass
class OptimizerConfig:
    """
    Optimizer configuration.

    Every knob is optional; ``None`` keeps the library default. ``algorithm``
    is mandatory when an optimizer is created.
    """
    algorithm: Optional[str] = None
    xtol_rel: Optional[float] = None
    xtol_abs: Optional[Union[float, np.ndarray]] = None
    ftol_abs: Optional[float] = None
    ftol_rel: Optional[float] = None
    maxeval: Optional[int] = None
    maxtime: Optional[float] = None

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "OptimizerConfig":
        """Build a configuration from a plain dictionary of options."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            warnings.warn(f"Ignoring unknown optimizer option(s): {', '.join(unknown)}")
        return cls(**{k: v for k, v in config.items() if k in known})


@dataclass
class OptimizerResult:
    """Outcome of a minimization."""
    status: OptimizerStatus
    iterations: int
    value: float = np.nan


def _as_tolerance(name: str, value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise OptimizerConfigError(f"{name}: expected a number, got {value!r}") from None
    if np.isnan(value) or value < 0:
        raise OptimizerConfigError(f"{name} must be a non-negative number, got {value}")
    return value


class Optimizer:
    """
    Handle holding the algorithm and stopping criteria of one minimization.

    Tolerances set to 0 and budgets set to a non-positive value are disabled.

    Parameters
    ----------
    algorithm : str
        One of ``SUPPORTED_ALGORITHMS``
    dimension : int
        Number of optimized scalars
    """

    def __init__(self, algorithm: str, dimension: int):
        self.method = algorithm_method(algorithm)
        self.algorithm = algorithm
        self.dimension = int(dimension)

        self.xtol_rel = 0.0
        self.xtol_abs = np.zeros(self.dimension)
        self.ftol_rel = 0.0
        self.ftol_abs = 0.0
        self.maxeval = 0
        self.maxtime = 0.0

    def set_xtol_rel(self, value: float):
        self.xtol_rel = _as_tolerance("xtol_rel", value)

    def set_xtol_abs(self, value: Union[float, np.ndarray]):
        if np.ndim(value) == 0:
            set_uniform_xtol_abs(self, value)
        else:
            set_per_value_xtol_abs(self, value)

    def set_ftol_rel(self, value: float):
        self.ftol_rel = _as_tolerance("ftol_rel", value)

    def set_ftol_abs(self, value: float):
        self.ftol_abs = _as_tolerance("ftol_abs", value)

    def set_maxeval(self, value: int):
        if isinstance(value, (bool, np.bool_)) or not (
                isinstance(value, (int, np.integer))
                or (isinstance(value, (float, np.floating)) and float(value).is_integer())):
            raise OptimizerConfigError(f"maxeval must be an integer, got {value!r}")
        self.maxeval = int(value)

    def set_maxtime(self, value: float):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise OptimizerConfigError(f"maxtime: expected a number, got {value!r}") from None
        if np.isnan(value):
            raise OptimizerConfigError("maxtime must not be NaN")
        self.maxtime = value

    def x_converged(self, x_old: np.ndarray, x_new: np.ndarray) -> bool:
        """NLopt-style parameter stopping test between successive iterates."""
        if self.xtol_rel <= 0 and not np.any(self.xtol_abs > 0):
            return False
        diff = np.abs(x_new - x_old)
        scale = 0.5 * (np.abs(x_new) + np.abs(x_old))
        stop = (diff < self.xtol_abs) | (diff < self.xtol_rel * scale)
        if self.xtol_rel > 0:
            stop |= x_new == x_old
        return bool(np.all(stop))

    def f_converged(self, f_old: float, f_new: float) -> bool:
        """NLopt-style function-value stopping test between successive iterates."""
        diff = abs(f_new - f_old)
        if diff < self.ftol_abs:
            return True
        if self.ftol_rel > 0:
            return diff < self.ftol_rel * 0.5 * (abs(f_new) + abs(f_old)) or f_new == f_old
        return False


def set_uniform_xtol_abs(optimizer: Optimizer, value: float):
    """Use the same absolute parameter tolerance for every parameter."""
    optimizer.xtol_abs = np.full(optimizer.dimension, _as_tolerance("xtol_abs", value))


def set_per_value_xtol_abs(optimizer: Optimizer, xtol_abs: np.ndarray):
    """Set one absolute parameter tolerance per parameter."""
    try:
        values = np.asarray(xtol_abs, dtype=np.float64).ravel()
    except (TypeError, ValueError):
        raise OptimizerConfigError(f"xtol_abs: expected numbers, got {xtol_abs!r}") from None
    if values.shape[0] != optimizer.dimension:
        raise DimensionMismatchError(
            f"set_per_value_xtol_abs: parameter size mismatch "
            f"({values.shape[0]} tolerances for {optimizer.dimension} parameters)")
    if np.any(np.isnan(values)) or np.any(values < 0):
        raise OptimizerConfigError("xtol_abs entries must be non-negative numbers")
    optimizer.xtol_abs = values


def create_optimizer(config: Union[OptimizerConfig, Mapping[str, Any]],
                     dimension: int) -> Optimizer:
    """
    Create an optimizer handle from a configuration.

    Parameters
    ----------
    config : OptimizerConfig or mapping
        Algorithm name and optional tolerance/budget options
    dimension : int
        Number of optimized scalars

    Returns
    -------
    optimizer : Optimizer
        Configured handle

    Raises
    ------
    UnsupportedAlgorithm
        If the algorithm name is not supported
    OptimizerConfigError
        If the algorithm is missing or an option cannot be applied
    """
    if not isinstance(config, OptimizerConfig):
        config = OptimizerConfig.from_mapping(config)
    if config.algorithm is None:
        raise OptimizerConfigError("Optimizer configuration requires an 'algorithm'")
    if int(dimension) < 1:
        raise DimensionMismatchError(f"Optimizer dimension must be positive, got {dimension}")

    optimizer = Optimizer(config.algorithm, dimension)

    if config.xtol_rel is not None:
        optimizer.set_xtol_rel(config.xtol_rel)
    if config.xtol_abs is not None:
        optimizer.set_xtol_abs(config.xtol_abs)
    if config.ftol_abs is not None:
        optimizer.set_ftol_abs(config.ftol_abs)
    if config.ftol_rel is not None:
        optimizer.set_ftol_rel(config.ftol_rel)
    if config.maxeval is not None:
        optimizer.set_maxeval(config.maxeval)
    if config.maxtime is not None:
        optimizer.set_maxtime(config.maxtime)

    return optimizer


class _StopOptimization(Exception):
    """Internal signal ending a scipy run on one of our stopping criteria."""

    def __init__(self, status: OptimizerStatus):
        super().__init__(status.name)
        self.status = status


class _EvaluationTracker:
    """
    Bridges ``objective_and_gradient(params, grad)`` to scipy's ``fun(x) -> (f, g)``.

    Budgets are checked before each evaluation, so exactly ``maxeval``
    evaluations run. Tolerances are checked between iterates in the scipy
    callback; a satisfied tolerance ends the run at the next evaluation request.
    """

    def __init__(self, optimizer: Optimizer,
                 objective_and_gradient: Callable[[np.ndarray, np.ndarray], float]):
        self.optimizer = optimizer
        self.objective_and_gradient = objective_and_gradient
        self.n_evals = 0
        self.start = time.monotonic()
        self.pending: Optional[OptimizerStatus] = None

        self.best_x: Optional[np.ndarray] = None
        self.best_f = np.inf
        self.last_x: Optional[np.ndarray] = None
        self.last_f = np.nan
        self.prev_x: Optional[np.ndarray] = None
        self.prev_f: Optional[float] = None

    def __call__(self, x: np.ndarray):
        opt = self.optimizer
        if self.pending is not None:
            raise _StopOptimization(self.pending)
        if opt.maxeval > 0 and self.n_evals >= opt.maxeval:
            raise _StopOptimization(OptimizerStatus.MAXEVAL_REACHED)
        if opt.maxtime > 0 and time.monotonic() - self.start >= opt.maxtime:
            raise _StopOptimization(OptimizerStatus.MAXTIME_REACHED)

        x = np.array(x, dtype=np.float64)
        grad = np.zeros(opt.dimension)
        f = float(self.objective_and_gradient(x, grad))
        self.n_evals += 1

        if self.best_x is None or f < self.best_f:
            self.best_x, self.best_f = x, f
        if self.prev_x is None:
            self.prev_x, self.prev_f = x, f
        self.last_x, self.last_f = x, f
        return f, grad

    def on_iteration(self, xk: np.ndarray):
        xk = np.array(xk, dtype=np.float64)
        f = self.last_f if self.last_x is not None and np.array_equal(xk, self.last_x) else None

        if self.prev_x is not None:
            if f is not None and self.prev_f is not None and self.optimizer.f_converged(self.prev_f, f):
                self.pending = OptimizerStatus.FTOL_REACHED
            elif self.optimizer.x_converged(self.prev_x, xk):
                self.pending = OptimizerStatus.XTOL_REACHED
        self.prev_x, self.prev_f = xk, f


# Iteration caps of the scipy methods, lifted so that maxeval alone bounds the run
_SCIPY_UNBOUNDED = 10 ** 9
_SCIPY_OPTIONS: Dict[str, Dict[str, int]] = {
    "L-BFGS-B": {"maxfun": _SCIPY_UNBOUNDED, "maxiter": _SCIPY_UNBOUNDED},
    "TNC": {"maxfun": _SCIPY_UNBOUNDED},
    "BFGS": {"maxiter": _SCIPY_UNBOUNDED},
    "SLSQP": {"maxiter": _SCIPY_UNBOUNDED},
}


def _status_from_scipy(result) -> OptimizerStatus:
    if result.success:
        return OptimizerStatus.SUCCESS
    message = str(result.message).lower()
    if any(token in message for token in ("maximum", "max.", "exceeded", "limit")):
        return OptimizerStatus.MAXEVAL_REACHED
    if "precision" in message or "abnormal" in message:
        return OptimizerStatus.ROUNDOFF_LIMITED
    return OptimizerStatus.FAILURE


def minimize_objective_on_parameters(optimizer: Optimizer,
                                     objective_and_gradient: Callable[[np.ndarray, np.ndarray], float],
                                     parameters: np.ndarray) -> OptimizerResult:
    """
    Minimize ``objective_and_gradient`` starting from ``parameters``.

    Parameters
    ----------
    optimizer : Optimizer
        Configured handle
    objective_and_gradient : callable
        ``f(params, grad) -> float``; must fill ``grad`` in place
    parameters : ndarray, shape (dimension,)
        Initial point, overwritten with the final point

    Returns
    -------
    result : OptimizerResult
        Status code, number of objective evaluations and final value
    """
    if not isinstance(parameters, np.ndarray) or parameters.ndim != 1:
        raise DimensionMismatchError("parameters must be a 1-D numpy array")
    if parameters.shape[0] != optimizer.dimension:
        raise DimensionMismatchError(
            f"Parameter vector has {parameters.shape[0]} values, "
            f"optimizer dimension is {optimizer.dimension}")

    tracker = _EvaluationTracker(optimizer, objective_and_gradient)
    x0 = np.array(parameters, dtype=np.float64)

    try:
        result = minimize(tracker, x0, method=optimizer.method, jac=True,
                          callback=tracker.on_iteration,
                          options=dict(_SCIPY_OPTIONS[optimizer.method]))
    except _StopOptimization as stop:
        status = stop.status
        x_final = tracker.best_x if tracker.best_x is not None else x0
        value = tracker.best_f
    else:
        status = _status_from_scipy(result)
        x_final = result.x
        value = float(result.fun)

    parameters[...] = x_final
    return OptimizerResult(status=status, iterations=tracker.n_evals, value=value)
