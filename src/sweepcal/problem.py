"""
Robust nonlinear least-squares problem and Levenberg-Marquardt solver.

A Problem holds named parameter blocks (numpy vectors updated in place) and
residual blocks that read a subset of them. Blocks can be held constant.
Each residual block carries a Huber loss; the solver handles it with
iteratively reweighted normal equations assembled as a sparse matrix.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse import linalg as splinalg

from .constants import HUBER_DELTA

logger = logging.getLogger(__name__)

# Termination reasons
CONVERGENCE = "CONVERGENCE"
NO_CONVERGENCE = "NO_CONVERGENCE"
FAILURE = "FAILURE"

# Diagonal clamp for Marquardt scaling
_MIN_DIAGONAL = 1e-6
_MAX_DIAGONAL = 1e32
_MAX_DAMPING = 1e16


def huber_weight(sq_norm: float, scale: float) -> float:
    """Return the Huber weight for a squared residual norm."""
    if scale <= 0.0 or sq_norm <= scale * scale:
        return 1.0
    return float(scale / np.sqrt(sq_norm))


def huber_loss(sq_norm: float, scale: float) -> float:
    """Return rho(s) for the Huber loss, equal to s inside the scale."""
    if scale <= 0.0 or sq_norm <= scale * scale:
        return sq_norm
    return float(2.0 * scale * np.sqrt(sq_norm) - scale * scale)


@dataclass
class ParameterBlock:
    name: Hashable
    values: np.ndarray
    constant: bool = False
    offset: int = -1  # index into the free parameter vector

    @property
    def size(self) -> int:
        return self.values.size


@dataclass
class ResidualBlock:
    function: Callable[..., np.ndarray]
    blocks: List[ParameterBlock]
    loss_scale: Optional[float] = HUBER_DELTA

    def evaluate(self) -> np.ndarray:
        return np.asarray(
            self.function(*[b.values for b in self.blocks]), dtype=np.float64
        )

    def cost(self) -> float:
        r = self.evaluate()
        s = float(r @ r)
        if self.loss_scale is None:
            return 0.5 * s
        return 0.5 * huber_loss(s, self.loss_scale)


@dataclass
class SolverOptions:
    """Stopping criteria and resources for a solve."""
    max_iterations: int = 100
    max_time: float = 30.0  # seconds
    threads: int = 1
    debug: bool = False
    function_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-12
    parameter_tolerance: float = 1e-10
    initial_damping: float = 1e-4
    jacobian_step: float = 1e-7


@dataclass
class SolverSummary:
    """Outcome of a solve."""
    termination: str
    iterations: int = 0
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_residual_blocks: int = 0
    num_parameters: int = 0
    elapsed: float = 0.0
    message: str = ""

    @property
    def usable(self) -> bool:
        return self.termination in (CONVERGENCE, NO_CONVERGENCE)


class Problem:
    """
    Explicit optimization problem.

    Usage:
        problem = Problem()
        problem.add_parameter_block("x", np.zeros(6))
        problem.add_parameter_block("a", pose_a, constant=True)
        problem.add_residual_block(residual_fn, ["x", "a"])
        summary = problem.solve(SolverOptions(max_iterations=50))
    """

    def __init__(self):
        self._blocks: Dict[Hashable, ParameterBlock] = {}
        self._residuals: List[ResidualBlock] = []

    def add_parameter_block(
        self,
        name: Hashable,
        values: np.ndarray,
        constant: bool = False,
    ) -> ParameterBlock:
        """
        Register a parameter block, or return the one already under this name.

        The values array is optimized in place.
        """
        block = self._blocks.get(name)
        if block is None:
            values = np.asarray(values, dtype=np.float64)
            block = ParameterBlock(name=name, values=values, constant=constant)
            self._blocks[name] = block
        elif constant:
            block.constant = True
        return block

    def parameter_block(self, name: Hashable) -> ParameterBlock:
        return self._blocks[name]

    def add_residual_block(
        self,
        function: Callable[..., np.ndarray],
        names: Sequence[Hashable],
        loss_scale: Optional[float] = HUBER_DELTA,
    ) -> ResidualBlock:
        """
        Add a residual over existing parameter blocks.

        Args:
            function: Called with each block's values, returns the residual vector
            names: Parameter block names in argument order
            loss_scale: Huber scale, or None for a plain squared loss
        """
        missing = [n for n in names if n not in self._blocks]
        if missing:
            raise KeyError(f"Unknown parameter blocks: {missing}")
        residual = ResidualBlock(
            function=function,
            blocks=[self._blocks[n] for n in names],
            loss_scale=loss_scale,
        )
        self._residuals.append(residual)
        return residual

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residuals)

    @property
    def free_blocks(self) -> List[ParameterBlock]:
        return [b for b in self._blocks.values() if not b.constant]

    @property
    def num_free_parameters(self) -> int:
        return sum(b.size for b in self.free_blocks)

    def cost(self) -> float:
        return float(sum(r.cost() for r in self._residuals))

    def _get_state(self) -> np.ndarray:
        blocks = self.free_blocks
        if not blocks:
            return np.zeros(0)
        return np.concatenate([b.values for b in blocks])

    def _set_state(self, x: np.ndarray) -> None:
        for b in self.free_blocks:
            b.values[:] = x[b.offset:b.offset + b.size]

    def _linearize(
        self,
        residual: ResidualBlock,
        step: float,
    ) -> Tuple[np.ndarray, List[Tuple[ParameterBlock, np.ndarray]], float]:
        """Evaluate a residual with central-difference Jacobians per free block."""
        values = [b.values.copy() for b in residual.blocks]
        r = np.asarray(residual.function(*values), dtype=np.float64)

        jacobians = []
        for i, block in enumerate(residual.blocks):
            if block.constant:
                continue
            J = np.zeros((r.size, block.size))
            for k in range(block.size):
                h = step * max(1.0, abs(values[i][k]))
                orig = values[i][k]
                values[i][k] = orig + h
                r_plus = np.asarray(residual.function(*values), dtype=np.float64)
                values[i][k] = orig - h
                r_minus = np.asarray(residual.function(*values), dtype=np.float64)
                values[i][k] = orig
                J[:, k] = (r_plus - r_minus) / (2.0 * h)
            jacobians.append((block, J))

        s = float(r @ r)
        weight = 1.0 if residual.loss_scale is None else huber_weight(s, residual.loss_scale)
        return r, jacobians, weight

    def _normal_equations(
        self,
        n: int,
        options: SolverOptions,
        executor: Optional[ThreadPoolExecutor],
    ) -> Tuple[sparse.csc_matrix, np.ndarray]:
        step = options.jacobian_step
        if executor is not None:
            results = list(executor.map(lambda res: self._linearize(res, step), self._residuals))
        else:
            results = [self._linearize(res, step) for res in self._residuals]

        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        data: List[np.ndarray] = []
        g = np.zeros(n)
        for r, jacobians, weight in results:
            for block_i, J_i in jacobians:
                sl_i = slice(block_i.offset, block_i.offset + block_i.size)
                g[sl_i] += weight * (J_i.T @ r)
                for block_j, J_j in jacobians:
                    H_ij = weight * (J_i.T @ J_j)
                    ii, jj = np.meshgrid(
                        np.arange(block_i.offset, block_i.offset + block_i.size),
                        np.arange(block_j.offset, block_j.offset + block_j.size),
                        indexing="ij",
                    )
                    rows.append(ii.ravel())
                    cols.append(jj.ravel())
                    data.append(H_ij.ravel())

        if data:
            H = sparse.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(n, n),
            ).tocsc()
        else:
            H = sparse.csc_matrix((n, n))
        return H, g

    def solve(self, options: Optional[SolverOptions] = None) -> SolverSummary:
        """
        Minimize the total robust cost over the free parameter blocks.

        Args:
            options: Solver options

        Returns:
            SolverSummary; parameter blocks hold the final estimate
        """
        options = options or SolverOptions()
        log = logger.info if options.debug else logger.debug
        start = time.monotonic()

        offset = 0
        for b in self.free_blocks:
            b.offset = offset
            offset += b.size
        n = offset

        summary = SolverSummary(
            termination=NO_CONVERGENCE,
            num_residual_blocks=self.num_residual_blocks,
            num_parameters=n,
        )
        cost = self.cost()
        summary.initial_cost = summary.final_cost = cost

        if not np.isfinite(cost):
            summary.termination = FAILURE
            summary.message = "Initial cost is not finite"
            return summary
        if n == 0 or not self._residuals:
            summary.termination = CONVERGENCE
            summary.message = "Nothing to optimize"
            return summary

        executor = ThreadPoolExecutor(max_workers=options.threads) if options.threads > 1 else None
        try:
            damping = options.initial_damping
            x = self._get_state()
            for iteration in range(1, options.max_iterations + 1):
                if time.monotonic() - start > options.max_time:
                    summary.message = "Maximum solver time reached"
                    break
                summary.iterations = iteration

                H, g = self._normal_equations(n, options, executor)
                if np.max(np.abs(g)) <= options.gradient_tolerance:
                    summary.termination = CONVERGENCE
                    summary.message = "Gradient tolerance reached"
                    break

                diag = np.clip(H.diagonal(), _MIN_DIAGONAL, _MAX_DIAGONAL)
                accepted = False
                while damping <= _MAX_DAMPING:
                    A = (H + sparse.diags(damping * diag)).tocsc()
                    delta = splinalg.spsolve(A, -g)
                    if not np.all(np.isfinite(delta)):
                        damping *= 10.0
                        continue

                    if np.linalg.norm(delta) <= options.parameter_tolerance * (
                        np.linalg.norm(x) + options.parameter_tolerance
                    ):
                        summary.termination = CONVERGENCE
                        summary.message = "Parameter tolerance reached"
                        break

                    self._set_state(x + delta)
                    new_cost = self.cost()
                    if np.isfinite(new_cost) and new_cost < cost:
                        x = x + delta
                        reduction = cost - new_cost
                        log(
                            "iter %3d cost %.6e -> %.6e damping %.1e",
                            iteration, cost, new_cost, damping,
                        )
                        cost = new_cost
                        damping = max(damping / 10.0, 1e-12)
                        accepted = True
                        if reduction <= options.function_tolerance * cost:
                            summary.termination = CONVERGENCE
                            summary.message = "Function tolerance reached"
                        break

                    self._set_state(x)
                    damping *= 10.0

                if summary.termination == CONVERGENCE:
                    break
                if not accepted:
                    # No step lowers the cost any more
                    self._set_state(x)
                    summary.termination = CONVERGENCE
                    summary.message = "No further cost reduction"
                    break
            else:
                summary.message = "Maximum iterations reached"
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        summary.final_cost = cost
        summary.elapsed = time.monotonic() - start
        log(
            "Solver finished: %s (%s) after %d iterations, cost %.6e -> %.6e",
            summary.termination, summary.message, summary.iterations,
            summary.initial_cost, summary.final_cost,
        )
        return summary
