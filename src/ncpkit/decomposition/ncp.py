r"""
Nonnegative CANDECOMP/PARAFAC decomposition with inexact block coordinate descent.

The model

.. math::

    \min_{U_1 \geq 0, ..., U_N \geq 0} \frac{1}{2} \| \mathcal{X} - [[U_1, ..., U_N]] \|_F^2
        + \sum_n \beta_n \|U_n\|_1

is fitted by cycling through the modes and approximately solving the
nonnegative least squares problem of each mode with one of the solvers in
:mod:`ncpkit.decomposition.nnls`.
"""
import time
from pathlib import Path

import h5py
import numpy as np
from sklearn.utils import check_random_state

from .. import base, utils
from .base_decomposer import BaseDecomposer
from .decompositions import KruskalTensor
from .nnls import get_nnls_solver

__all__ = ['NCP_BCD', 'Diagnostics', 'decompose']

STOPPING_POLICIES = ('budget', 'objective', 'fit')
INIT_METHODS = ('random', 'nvecs', 'precomputed', 'from_checkpoint')

# Number of consecutive iterations the stopping criterion must hold
NUM_STALL_ITS = 3


def _transpose(matrix):
    if matrix is None:
        return None
    return matrix.T


class Diagnostics:
    """Convergence history of a nonnegative CP fit, one entry per outer iteration.

    Indexing gives the tuple ``(objective, relative objective change,
    relative residual, elapsed time)`` for that iteration.
    """
    def __init__(self):
        self.obj = []
        self.relative_objective_change = []
        self.relative_residual = []
        self.time = []
        self.fit = []
        self.inner_its = []
        self.nstall = 0

    @property
    def iter(self):
        return len(self.obj)

    @property
    def relerr(self):
        """Relative objective change (row 0) and relative residual (row 1)."""
        return np.array([self.relative_objective_change, self.relative_residual]).reshape(2, -1)

    def append(self, obj, relative_objective_change, relative_residual, elapsed_time, fit, inner_its):
        self.obj.append(obj)
        self.relative_objective_change.append(relative_objective_change)
        self.relative_residual.append(relative_residual)
        self.time.append(elapsed_time)
        self.fit.append(fit)
        self.inner_its.append(list(inner_its))

    def __len__(self):
        return self.iter

    def __getitem__(self, item):
        return (
            self.obj[item],
            self.relative_objective_change[item],
            self.relative_residual[item],
            self.time[item],
        )

    def store_in_hdf5_group(self, group):
        for name in list(group):
            del group[name]

        group.attrs['iter'] = self.iter
        group.attrs['nstall'] = self.nstall
        group['obj'] = np.asarray(self.obj, dtype=float)
        group['relerr'] = self.relerr
        group['time'] = np.asarray(self.time, dtype=float)
        group['fit'] = np.asarray(self.fit, dtype=float)
        group['inner_its'] = np.asarray(self.inner_its, dtype=int)

    @classmethod
    def load_from_hdf5_group(cls, group, num_its=None):
        """Load the record, keeping only the first ``num_its`` iterations if given.
        """
        if num_its is None:
            num_its = int(group.attrs['iter'])

        diagnostics = cls()
        diagnostics.obj = group['obj'][:num_its].tolist()
        diagnostics.relative_objective_change = group['relerr'][0, :num_its].tolist()
        diagnostics.relative_residual = group['relerr'][1, :num_its].tolist()
        diagnostics.time = group['time'][:num_its].tolist()
        diagnostics.fit = group['fit'][:num_its].tolist()
        diagnostics.inner_its = group['inner_its'][:num_its].tolist()
        if num_its == group.attrs['iter']:
            diagnostics.nstall = int(group.attrs['nstall'])
        return diagnostics


class NCP_BCD(BaseDecomposer):
    r"""Nonnegative CP decomposition by inexact block coordinate descent.

    Each outer iteration updates all factor matrices once, in the order given
    by ``dimorder``. The update of mode :math:`n` runs a few iterations of a
    nonnegative least squares solver on

    .. math::

        \min_{U_n \geq 0} \frac{1}{2} \text{tr}(U_n B_n^T B_n U_n^T) - \text{tr}(U_n^T M_n) + r_n(U_n),

    where :math:`B_n^T B_n` is the elementwise product of the Gram matrices
    of the other factor matrices and :math:`M_n` is the matricised tensor
    times Khatri-Rao product for mode :math:`n`. The inner tolerance of a mode is divided by
    ten every time its solver stops after a single iteration.

    Arguments:
    ----------
    rank: int
        Number of components.
    max_its: int (optional, default=500)
        Maximum number of outer iterations.
    convergence_tol: float (optional, default=1e-4)
        Tolerance used by the stopping policy.
    max_time: float (optional, default=1000)
        Wall clock budget in seconds. Checked after every outer iteration.
    dimorder: list(int) (optional, default=None)
        Order the modes are updated in, a permutation of ``range(X.ndim)``.
        If None, the modes are updated in their natural order.
    init: str (optional, default='random')
        Initialisation method: ``'random'`` (uniform random factors),
        ``'nvecs'`` (absolute value of the leading eigenvectors of each
        unfolding, padded with random columns), ``'precomputed'``
        (the ``initial_decomposition`` passed to ``fit``),
        ``'from_checkpoint'`` or a path to a checkpoint file.
    regparams: np.ndarray (optional, default=None)
        Array of shape [X.ndim, 2]. Row :math:`n` holds the ridge penalty and
        the sparsity (L1) penalty of mode :math:`n`. If None, no mode is penalised.
    stop: str (optional, default='fit')
        Stopping policy. ``'budget'`` only stops when the iteration or time
        budget is spent. ``'objective'`` stops when the relative objective change
        has been below ``convergence_tol`` for three consecutive iterations or the
        relative residual is below ``convergence_tol``. ``'fit'`` stops when the
        change in fit has been below ``convergence_tol`` for three consecutive
        iterations.
    solver: str or BaseNNLSSolver (optional, default='admm')
        Nonnegative least squares solver, ``'admm'``, ``'hals'`` or ``'mu'``.
    inner_max_its: int (optional, default=5)
        Maximum number of inner iterations per mode update.
    inner_tol: float (optional, default=1e-2)
        Initial inner tolerance of every mode.
    loggers: list(Logger) (optional, default=None)
        Loggers called after each outer iteration.
    checkpoint_frequency: int (optional, default=None)
        How often the decomposition, logs and diagnostics should be stored.
        If None or negative, only the last iteration is stored.
    checkpoint_path: str or Path (optional, default=None)
        HDF5 file to store checkpoints in. If None, nothing is stored.
    print_frequency: int (optional, default=1)
        How often the fit is printed. Zero or negative values disables printing.
    random_state: None, int or np.random.RandomState (optional, default=None)
        Seed used for random initialisation.
    """
    DecompositionType = KruskalTensor

    def __init__(
        self,
        rank,
        max_its=500,
        convergence_tol=1e-4,
        max_time=1000,
        dimorder=None,
        init='random',
        regparams=None,
        stop='fit',
        solver='admm',
        inner_max_its=5,
        inner_tol=1e-2,
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=1,
        random_state=None,
    ):
        super().__init__(
            max_its=max_its,
            convergence_tol=convergence_tol,
            loggers=loggers,
            checkpoint_frequency=checkpoint_frequency,
            checkpoint_path=checkpoint_path,
            print_frequency=print_frequency,
        )
        self.rank = rank
        self.max_time = max_time
        self.dimorder = dimorder
        self.init = init
        self.regparams = regparams
        self.stop = stop
        self.solver = solver
        self.inner_max_its = inner_max_its
        self.inner_tol = inner_tol
        self.random_state = random_state

    @property
    def num_modes(self):
        return self.X.ndim

    def _check_parameters(self, initial_decomposition=None):
        num_modes = self.num_modes

        if np.any(self.X < 0):
            raise ValueError('X must be a nonnegative tensor.')
        if self.X_norm == 0:
            raise ValueError('X must have at least one nonzero entry.')
        if int(self.rank) != self.rank or self.rank <= 0:
            raise ValueError(f'The rank must be a positive integer, not {self.rank}.')
        if self.max_its <= 0:
            raise ValueError(f'`max_its` must be positive, not {self.max_its}.')

        dimorder = list(range(num_modes)) if self.dimorder is None else list(self.dimorder)
        if sorted(dimorder) != list(range(num_modes)):
            raise ValueError(
                f'`dimorder` must be a permutation of the {num_modes} modes, not {self.dimorder}.'
            )

        if self.regparams is None:
            regparams = np.zeros((num_modes, 2))
        else:
            regparams = np.array(self.regparams, dtype=float)
        if regparams.shape != (num_modes, 2):
            raise ValueError(
                f'`regparams` must have shape ({num_modes}, 2), not {regparams.shape}.'
            )
        if np.any(regparams < 0):
            raise ValueError('The regularisation parameters cannot be negative.')

        if self.stop not in STOPPING_POLICIES:
            raise ValueError(f'`stop` must be one of {STOPPING_POLICIES}, not {self.stop!r}.')

        init = self.init.lower() if isinstance(self.init, str) else self.init
        if init == 'precomputed':
            if initial_decomposition is None:
                raise ValueError('Precomputed components must be passed when init is `precomputed`.')
            self._check_valid_components(self._as_kruskal_tensor(initial_decomposition))
        elif init == 'from_checkpoint':
            if initial_decomposition is None or not Path(initial_decomposition).is_file():
                raise ValueError(f'Cannot find the checkpoint file {initial_decomposition}.')
        elif init not in INIT_METHODS and not Path(str(self.init)).is_file():
            raise ValueError(
                f'Init method must be one of {INIT_METHODS} or a path to a checkpoint, not {self.init!r}.'
            )

        self.nnls_solver = get_nnls_solver(self.solver, max_its=self.inner_max_its, tol=self.inner_tol)
        self._dimorder = dimorder
        self._regparams = regparams
        self._random_state = check_random_state(self.random_state)

    @staticmethod
    def _as_kruskal_tensor(decomposition):
        if isinstance(decomposition, KruskalTensor):
            return decomposition
        return KruskalTensor([np.asarray(fm, dtype=float) for fm in decomposition])

    def _check_valid_components(self, decomposition):
        """Check if provided factor matrices have correct shape and are nonnegative.
        """
        if len(decomposition.factor_matrices) != self.num_modes:
            raise ValueError(
                f'There are {len(decomposition.factor_matrices)} factor matrices, '
                f'but X has {self.num_modes} modes.'
            )

        for i, factor_matrix in enumerate(decomposition.factor_matrices):
            if factor_matrix.shape != (self.X.shape[i], self.rank):
                raise ValueError(
                    f'Factor matrix {i} has shape {factor_matrix.shape}, '
                    f'but it should be {(self.X.shape[i], self.rank)}.'
                )
            if np.any(factor_matrix < 0):
                raise ValueError(f'Factor matrix {i} has negative entries.')

    def init_random(self):
        """Uniform random initialisation of the factor matrices.
        """
        self.decomposition = KruskalTensor.random_init(
            self.X.shape, rank=self.rank, random_method='uniform', random_state=self._random_state
        )

    def init_nvecs(self):
        """Initialise the factor matrices from the leading eigenvectors of each unfolding.

        Only ``X.shape[n] - 2`` eigenvectors are used for mode n, the remaining
        columns are drawn from a uniform distribution.
        """
        factor_matrices = []
        for mode, length in enumerate(self.X.shape):
            num_vectors = min(self.rank, length - 2)
            if self.print_frequency > 0:
                print(f'  Computing {max(num_vectors, 0)} leading e-vectors for factor {mode}.')

            factor_matrix = np.abs(base.leading_eigenvectors(self.X, mode, num_vectors))
            num_missing = self.rank - factor_matrix.shape[1]
            if num_missing > 0:
                factor_matrix = np.concatenate(
                    [factor_matrix, self._random_state.uniform(size=(length, num_missing))],
                    axis=1
                )
            factor_matrices.append(factor_matrix)

        self.decomposition = KruskalTensor(factor_matrices)

    def init_components(self, initial_decomposition=None):
        """Initialize the components with the initialization method in `self.init`.

        New factor matrices are afterwards scaled so they all have Frobenius
        norm equal to the N-th root of the norm of X. Checkpoints are loaded
        as they were stored, together with the solver state, so the fit
        continues where it stopped.

        Arguments:
        ----------
        initial_decomposition: KruskalTensor, list(np.ndarray) or str (optional)
            The initial factor matrices (init=precomputed) or the path of the
            checkpoint file to load (init=from_checkpoint).
        """
        init = self.init.lower() if isinstance(self.init, str) else self.init

        if init == 'from_checkpoint':
            self.load_checkpoint(initial_decomposition)
            return
        elif init not in INIT_METHODS:
            self.load_checkpoint(self.init)
            return

        if init == 'random':
            self.init_random()
        elif init == 'nvecs':
            self.init_nvecs()
        else:
            decomposition = self._as_kruskal_tensor(initial_decomposition)
            self._check_valid_components(decomposition)
            self.decomposition = decomposition

        factor_matrices = self._absorb_weights(self.decomposition)
        self.decomposition = KruskalTensor(utils.balance_factors(factor_matrices, self.X_norm))

        self._init_optimisation_state()

    @staticmethod
    def _absorb_weights(decomposition):
        factor_matrices = [np.array(fm, dtype=float) for fm in decomposition.factor_matrices]
        factor_matrices[0] = factor_matrices[0]*decomposition.weights[np.newaxis]
        return factor_matrices

    def _init_optimisation_state(self):
        self.dual_variables = [self.nnls_solver.init_state(fm) for fm in self.factor_matrices]
        self.inner_tols = self.inner_tol*np.ones(self.num_modes)
        self.diagnostics = Diagnostics()

        self._prev_obj = 0.5*self.X_norm**2
        self._prev_fit = 0
        self.fit_change = np.inf
        self._last_updated_mode = None
        self._gram_cache = None
        self._matrix_khatri_rao_product_cache = None

    def _load_checkpoint_state(self, h5, iteration):
        self.decomposition = KruskalTensor(self._absorb_weights(self.decomposition))
        self._init_optimisation_state()

        checkpoint_group = h5[f'checkpoint_{iteration:05d}']
        if 'solver_state' in checkpoint_group:
            state_group = checkpoint_group['solver_state']
            self.inner_tols = state_group['inner_tols'][...]
            for mode in range(self.num_modes):
                name = f'dual_variable{mode:03d}'
                if name in state_group:
                    self.dual_variables[mode] = state_group[name][...]

        if 'diagnostics' in h5:
            self.diagnostics = Diagnostics.load_from_hdf5_group(h5['diagnostics'], iteration + 1)
        if self.diagnostics.fit:
            fits = [0, *self.diagnostics.fit]
            self._prev_obj = self.diagnostics.obj[-1]
            self._prev_fit = fits[-1]
            self.fit_change = abs(fits[-1] - fits[-2])

        self.current_iteration = iteration + 1

    @property
    def factor_matrices(self):
        return self.decomposition.factor_matrices

    @property
    def SSE(self):
        """Sum Squared Error"""
        if self._last_updated_mode is None:
            return super().SSE

        # ||X - Y||^2 = ||X||^2 - 2<X, Y> + ||Y||^2, using the normal
        # equation matrices of the last updated mode
        factor_matrix = self.factor_matrices[self._last_updated_mode]
        SSE = (
            self.X_norm**2
            - 2*np.sum(factor_matrix*self._matrix_khatri_rao_product_cache)
            + np.sum((factor_matrix.T @ factor_matrix)*self._gram_cache)
        )
        return max(SSE, 0)

    @property
    def regularisation_penalty(self):
        penalty = 0
        for sparsity, factor_matrix in zip(self._regparams[:, 1], self.factor_matrices):
            if sparsity > 0:
                penalty += sparsity*np.sum(np.abs(factor_matrix))
        return penalty

    @property
    def loss(self):
        return 0.5*self.SSE + self.regularisation_penalty

    @property
    def fit_score(self):
        """Fraction of X explained by the model, one minus the relative residual norm."""
        return 1 - np.sqrt(self.SSE)/self.X_norm

    def _update_factor(self, mode):
        """Run the nonnegative least squares solver for one mode.

        Returns the number of inner iterations the solver used.
        """
        gram = base.gram_product(self.factor_matrices, skip=mode)
        mttkrp = base.matrix_khatri_rao_product(self.X, self.factor_matrices, mode)
        ridge, sparsity = self._regparams[mode]

        new_factor_t, new_dual_t, num_its = self.nnls_solver.solve(
            mttkrp.T,
            gram,
            self.factor_matrices[mode].T,
            _transpose(self.dual_variables[mode]),
            tol=self.inner_tols[mode],
            ridge=ridge,
            sparsity=sparsity,
            outer_iteration=self.current_iteration + 1,
        )
        if num_its == 1:
            self.inner_tols[mode] *= 0.1

        self.decomposition.factor_matrices[mode] = new_factor_t.T
        self.dual_variables[mode] = _transpose(new_dual_t)

        self._last_updated_mode = mode
        self._gram_cache = gram
        self._matrix_khatri_rao_product_cache = mttkrp
        return num_its

    def _update_factors(self):
        inner_its = [0]*self.num_modes
        for mode in self._dimorder:
            inner_its[mode] = self._update_factor(mode)
        return inner_its

    def _update_convergence(self, inner_its, elapsed_time):
        """Record the diagnostics of the current iteration and check the stopping policy.

        Returns True if the fitting should stop.
        """
        SSE = self.SSE
        obj = 0.5*SSE + self.regularisation_penalty

        relative_objective_change = abs(obj - self._prev_obj)/(self._prev_obj + 1)
        relative_residual = np.sqrt(SSE)/self.X_norm
        fit = 1 - relative_residual
        self.fit_change = abs(self._prev_fit - fit)

        self.diagnostics.append(
            obj, relative_objective_change, relative_residual, elapsed_time, fit, inner_its
        )
        self._prev_obj = obj
        self._prev_fit = fit

        tol = self.convergence_tol
        if self.stop == 'objective':
            criterion = relative_objective_change < tol
        elif self.stop == 'fit':
            criterion = self.fit_change < tol
        else:
            criterion = False
        self.diagnostics.nstall = self.diagnostics.nstall + 1 if criterion else 0
        stalled = self.diagnostics.nstall >= NUM_STALL_ITS

        if self.stop == 'objective' and (stalled or relative_residual < tol):
            return True
        if self.stop == 'fit' and self.current_iteration > 0 and stalled:
            return True
        return elapsed_time > self.max_time

    def _fit(self):
        """Fit a nonnegative CP model with inexact block coordinate descent.
        """
        if self.print_frequency > 0:
            print(f'\nNonnegative CANDECOMP/PARAFAC using {type(self.nnls_solver).__name__}:')

        elapsed_before = self.diagnostics.time[-1] if self.diagnostics.time else 0
        start_time = time.perf_counter() - elapsed_before

        for _ in range(self.max_its - self.current_iteration):
            inner_its = self._update_factors()
            should_stop = self._update_convergence(inner_its, time.perf_counter() - start_time)

            if self.print_frequency > 0 and (self.current_iteration + 1) % self.print_frequency == 0:
                print(
                    f' Iter {self.current_iteration + 1:2d}: fit = {self.diagnostics.fit[-1]:e} '
                    f'fitdelta = {self.fit_change:7.1e}, inner iter: {", ".join(map(str, inner_its))}'
                )

            self._after_fit_iteration()
            if should_stop:
                break

        last_iteration = self.current_iteration - 1
        already_stored = (
            self.checkpoint_frequency > 0 and (last_iteration + 1) % self.checkpoint_frequency == 0
        )
        if self.checkpoint_path is not None and last_iteration >= 0 and not already_stored:
            self.store_checkpoint(last_iteration)

        if self.print_frequency > 0 and self.diagnostics.fit:
            print(f' Final fit = {self.diagnostics.fit[-1]:e} ')

    def store_checkpoint(self, iteration=None):
        if iteration is None:
            iteration = self.current_iteration
        super().store_checkpoint(iteration)

        with h5py.File(self.checkpoint_path, 'a') as h5:
            self.diagnostics.store_in_hdf5_group(h5.require_group('diagnostics'))

            state_group = h5[f'checkpoint_{iteration:05d}'].require_group('solver_state')
            state_group['inner_tols'] = self.inner_tols
            for mode, dual_variable in enumerate(self.dual_variables):
                if dual_variable is not None:
                    state_group[f'dual_variable{mode:03d}'] = dual_variable


def decompose(
    X,
    rank,
    tol=1e-4,
    maxiters=500,
    maxtime=1000,
    dimorder=None,
    init='random',
    regparams=None,
    stop='fit',
    printitn=1,
    solver='admm',
    **kwargs
):
    """Fit a nonnegative CP model to X.

    Arguments:
    ----------
    X: np.ndarray
        Nonnegative tensor.
    rank: int
        Number of components.
    init: str, KruskalTensor or list(np.ndarray)
        Initialisation method (see ``NCP_BCD``) or the initial factor matrices.
    **kwargs:
        Additional keyword arguments passed on to ``NCP_BCD``.

    Returns:
    --------
    decomposition: KruskalTensor
        The fitted nonnegative factor matrices, with unit weights.
    diagnostics: Diagnostics
        Convergence history.
    """
    initial_decomposition = None
    if not isinstance(init, (str, Path)):
        initial_decomposition = init
        init = 'precomputed'

    decomposer = NCP_BCD(
        rank,
        max_its=maxiters,
        convergence_tol=tol,
        max_time=maxtime,
        dimorder=dimorder,
        init=str(init),
        regparams=regparams,
        stop=stop,
        solver=solver,
        print_frequency=printitn,
        **kwargs
    )
    decomposition = decomposer.fit_transform(X, initial_decomposition=initial_decomposition)
    return decomposition, decomposer.diagnostics
