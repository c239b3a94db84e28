r"""
Inexact solvers for the nonnegative least squares subproblems of a
nonnegative CP decomposition.

Every solver approximately solves

.. math::

    \min_{H \geq 0} \frac{1}{2} \| V - W H \|_F^2 + \frac{\lambda}{2} \|H\|_F^2 + \beta \|H\|_1,

given only :math:`W^T V` and :math:`W^T W`, starting from the current
iterate :math:`H`. The solvers are meant to be stopped early; the enclosing
block coordinate descent does not need an exact solution of each block.
"""
from abc import ABC, abstractmethod

import numpy as np
import scipy.linalg as sla

__all__ = [
    'BaseNNLSSolver', 'HALS', 'ScaledADMM', 'MultiplicativeUpdate', 'get_nnls_solver'
]

EPS = np.finfo(float).eps


def subproblem_loss(WtV, WtW, H, VtV=0):
    r"""Compute :math:`\frac{1}{2}\|V - WH\|^2` from the normal equation matrices.

    The constant :math:`\frac{1}{2}\|V\|^2` is only included if ``VtV`` is given.
    """
    return 0.5*(np.sum(H * (WtW @ H)) - 2*np.sum(H * WtV) + VtV)


class BaseNNLSSolver(ABC):
    """Base class for the nonnegative least squares subsolvers.

    Arguments:
    ----------
    max_its: int (optional, default=5)
        Maximum number of inner iterations for each call to ``solve``.
    tol: float (optional, default=1e-2)
        Default tolerance for the relative change that stops the inner iterations.
    """
    name = None

    def __init__(self, max_its=5, tol=1e-2):
        if max_its < 0:
            raise ValueError(f'`max_its` cannot be negative, it is {max_its}.')
        self.max_its = max_its
        self.tol = tol

    def init_state(self, H):
        """Auxiliary state threaded through consecutive calls for the same block."""
        return None

    def solve(self, WtV, WtW, H, state=None, *, tol=None, ridge=0, sparsity=0, outer_iteration=None):
        """Improve the nonnegative iterate ``H``.

        Arguments:
        ----------
        WtV: np.ndarray
            Matrix of shape [rank, n].
        WtW: np.ndarray
            Symmetric positive semi-definite matrix of shape [rank, rank].
        H: np.ndarray
            Current iterate, shape [rank, n]. It is not modified.
        state: np.ndarray or None
            Auxiliary solver state from the previous call for this block.
        tol: float or None
            Tolerance for this call. If None, ``self.tol`` is used.
        ridge: float
            Ridge penalty.
        sparsity: float
            L1 penalty.
        outer_iteration: int or None
            Index (starting at 1) of the outer iteration that calls the solver.

        Returns:
        --------
        H: np.ndarray
            The new nonnegative iterate.
        state: np.ndarray or None
            Updated auxiliary state.
        num_its: int
            Number of inner iterations that were used.
        """
        if ridge < 0 or sparsity < 0:
            raise ValueError(
                f'The penalties must be nonnegative, got ridge={ridge} and sparsity={sparsity}.'
            )
        if tol is None:
            tol = self.tol

        H = np.array(H, dtype=float)
        if state is not None:
            state = np.array(state, dtype=float)
        if self.max_its == 0:
            return H, state, 0

        return self._solve(
            np.asarray(WtV, dtype=float),
            np.asarray(WtW, dtype=float),
            H,
            state,
            tol=tol,
            ridge=ridge,
            sparsity=sparsity,
            outer_iteration=outer_iteration,
        )

    @abstractmethod
    def _solve(self, WtV, WtW, H, state, tol, ridge, sparsity, outer_iteration):
        pass

    @staticmethod
    def _relative_change_is_small(H, previous_H, tol):
        return np.linalg.norm(H - previous_H) < tol*np.linalg.norm(H)

    def __repr__(self):
        return f'{type(self).__name__}(max_its={self.max_its}, tol={self.tol})'


class HALS(BaseNNLSSolver):
    """Hierarchical alternating least squares.

    Each inner iteration is one Gauss-Seidel sweep over the rows of ``H``,
    where every row is given its closed form nonnegative least squares update
    using the rows that already have been updated in the same sweep.

    Rows are floored at machine epsilon instead of zero during the first
    ``eps_floor_its`` outer iterations, which keeps components from dying
    before the other modes have settled.
    """
    name = 'hals'
    eps_floor_its = 5

    def _solve(self, WtV, WtW, H, state, tol, ridge, sparsity, outer_iteration):
        rank = H.shape[0]
        if outer_iteration is not None and outer_iteration <= self.eps_floor_its:
            floor = EPS
        else:
            floor = 0

        for it in range(self.max_its):
            previous_H = H.copy()

            for r in range(rank):
                H[r] += (WtV[r] - WtW[r] @ H - sparsity) / max(WtW[r, r] + ridge, EPS)
                np.maximum(H[r], floor, out=H[r])

            if self._relative_change_is_small(H, previous_H, tol):
                break

        return H, state, it + 1


class ScaledADMM(BaseNNLSSolver):
    r"""Alternating direction method of multipliers in scaled form.

    The problem is split into an unconstrained least squares block, :math:`H`,
    and a nonnegative auxiliary block, :math:`\hat{H}`, coupled by the scaled
    dual variable :math:`\Psi`. The penalty parameter is set to
    :math:`\text{tr}(W^TW)/R`, so the Cholesky factorisation of the linear
    system is computed once per call and reused by every inner iteration.

    The returned iterate is the auxiliary block and the solver state is
    the scaled dual variable, which should be passed to the next call
    for the same block.

    Huang K, Sidiropoulos N D, Liavas A P. A flexible and efficient algorithmic
    framework for constrained matrix and tensor factorization. IEEE Transactions
    on Signal Processing, 2016, 64(19): 5052-5065.
    """
    name = 'admm'
    min_rho = 1e-12

    def init_state(self, H):
        return np.zeros_like(H, dtype=float)

    def get_rho(self, WtW):
        rank = WtW.shape[0]
        return max(np.trace(WtW)/rank, self.min_rho)

    def _solve(self, WtV, WtW, H_hat, dual_variable, tol, ridge, sparsity, outer_iteration):
        rank = WtW.shape[0]
        if dual_variable is None:
            dual_variable = self.init_state(H_hat)

        rho = self.get_rho(WtW)
        cholesky = sla.cho_factor(WtW + (rho + ridge)*np.identity(rank), lower=True)
        shrinkage = sparsity/rho

        for it in range(self.max_its):
            previous_H_hat = H_hat

            H = sla.cho_solve(cholesky, WtV + rho*(H_hat - dual_variable))
            H_hat = np.maximum(0, H + dual_variable - shrinkage)
            primal_residual = H - H_hat
            dual_variable = dual_variable + primal_residual

            if self._has_converged(primal_residual, H_hat, previous_H_hat, dual_variable, tol):
                break

        return H_hat, dual_variable, it + 1

    @staticmethod
    def _has_converged(primal_residual, H_hat, previous_H_hat, dual_variable, tol):
        primal_criterion = np.linalg.norm(primal_residual) < tol*np.linalg.norm(H_hat)
        aux_change = np.linalg.norm(previous_H_hat - H_hat)
        return primal_criterion and aux_change < tol*np.linalg.norm(dual_variable)


class MultiplicativeUpdate(BaseNNLSSolver):
    """Lee-Seung multiplicative updates.

    The iterates stay nonnegative since they are products and quotients of
    nonnegative numbers. A positive sparsity penalty also acts as the guard
    against a zero denominator.
    """
    name = 'mu'

    def _solve(self, WtV, WtW, H, state, tol, ridge, sparsity, outer_iteration):
        numerator = WtV + EPS
        offset = sparsity if sparsity > 0 else EPS

        for it in range(self.max_its):
            previous_H = H

            denominator = WtW @ H + offset
            if ridge:
                denominator += ridge*H
            H = H * numerator / denominator

            if self._relative_change_is_small(H, previous_H, tol):
                break

        return H, state, it + 1


_SOLVERS = {solver.name: solver for solver in (HALS, ScaledADMM, MultiplicativeUpdate)}


def get_nnls_solver(solver, **kwargs):
    """Create a subsolver from its name ('admm', 'hals' or 'mu').

    Solver instances are returned unchanged.
    """
    if isinstance(solver, BaseNNLSSolver):
        return solver
    if isinstance(solver, str) and solver.lower() in _SOLVERS:
        return _SOLVERS[solver.lower()](**kwargs)
    raise ValueError(
        f'Solver must be one of {sorted(_SOLVERS)} or a BaseNNLSSolver instance, not {solver!r}.'
    )
