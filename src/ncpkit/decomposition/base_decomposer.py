"""
Base class for the iterative decomposers in ncpkit.
"""


from abc import ABC, abstractmethod

import h5py
import numpy as np

from . import decompositions


class BaseDecomposer(ABC):
    r"""Shared fitting loop plumbing: target, iteration counter, loggers and checkpoints.

    Arguments:
    ----------
    max_its: int (optional, default=500)
        Maximum number of outer iterations. Can be overwritten by ``fit``.
    convergence_tol: float (optional, default=1e-4)
        Tolerance used by the stopping policy of the decomposer.
    loggers: list(Logger) (optional, default=None)
        Objects with a ``log`` method that is called with the decomposer after
        every iteration and a ``write_to_hdf5_group`` method that is called
        when a checkpoint is stored. See ``ncpkit.decomposition.logging.BaseLogger``.
    checkpoint_frequency: int (optional, default=None)
        Number of iterations between stored checkpoints. If None or negative,
        only the last iteration is stored.
    checkpoint_path: str or Path (optional, default=None)
        HDF5 file the checkpoints are written to. If None, nothing is written.
    print_frequency: int (optional, default=None)
        Number of iterations between progress lines. None, zero and negative
        values disable printing.
    """
    DecompositionType = decompositions.BaseDecomposedTensor

    @abstractmethod
    def __init__(
        self,
        max_its=500,
        convergence_tol=1e-4,
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
    ):
        self.max_its = max_its
        self.convergence_tol = convergence_tol
        self.checkpoint_frequency = -1 if checkpoint_frequency is None else checkpoint_frequency
        self.checkpoint_path = checkpoint_path
        self.print_frequency = -1 if print_frequency is None else print_frequency
        self.loggers = [] if loggers is None else loggers

    @abstractmethod
    def init_components(self, initial_decomposition=None):
        pass

    def _check_parameters(self, initial_decomposition=None):
        """Validate the configuration against the target before any components are initialised.
        """
        pass

    @abstractmethod
    def _check_valid_components(self, decomposition):
        pass

    @abstractmethod
    def _fit(self):
        pass

    @property
    @abstractmethod
    def loss(self):
        pass

    def set_target(self, X):
        self.X = np.asarray(X, dtype=float)
        self.X_norm = np.linalg.norm(self.X)

    @property
    def SSE(self):
        """Sum Squared Error"""
        return np.linalg.norm(self.X - self.decomposition.construct_tensor())**2

    @property
    def explained_variance(self):
        return 1 - self.SSE/self.X_norm**2

    def _init_fit(self, X, max_its=None, initial_decomposition=None):
        self.current_iteration = 0
        if max_its is not None:
            self.max_its = max_its
        self.set_target(X)
        self._check_parameters(initial_decomposition)
        self.init_components(initial_decomposition=initial_decomposition)

    def fit(self, X, y=None, *, max_its=None, initial_decomposition=None):
        """Fit the decomposition to X.

        Arguments
        ---------
        X : np.ndarray
            The tensor to fit the model to.
        y : None
            Ignored, included to follow sklearn standards.
        max_its : int (optional)
            If set, then this will override the class's max_its.
        initial_decomposition : KruskalTensor, list(np.ndarray) or str (optional)
            Initial components if init is 'precomputed', or the checkpoint
            file if init is 'from_checkpoint'. Ignored otherwise.
        """
        self._init_fit(X=X, max_its=max_its, initial_decomposition=initial_decomposition)
        self._fit()
        return self

    def fit_transform(self, X, y=None, *, max_its=None, initial_decomposition=None):
        self.fit(X=X, y=y, max_its=max_its, initial_decomposition=initial_decomposition)
        return self.decomposition

    def continue_fit(self, max_its=None):
        """Run more iterations on an already fitted model, up to ``max_its`` in total.
        """
        if max_its is not None:
            self.max_its = max_its
        self._fit()

    def store_checkpoint(self, iteration=None):
        """Write the decomposition and the logs to ``checkpoint_path``.

        Each checkpoint is a group named ``checkpoint_<iteration>``, and the
        file attributes list the stored iterations.
        """
        if iteration is None:
            iteration = self.current_iteration

        with h5py.File(self.checkpoint_path, 'a') as h5:
            checkpoint_its = list(h5.attrs.get('checkpoint_its', []))
            h5.attrs['checkpoint_its'] = [*checkpoint_its, iteration]
            h5.attrs['final_iteration'] = iteration
            h5.attrs['decomposition_type'] = type(self).__name__

            checkpoint_group = h5.require_group(f'checkpoint_{iteration:05d}')
            for name in list(checkpoint_group):
                del checkpoint_group[name]
            self.decomposition.store_in_hdf5_group(checkpoint_group)

            for logger in self.loggers:
                logger.write_to_hdf5_group(h5)

    def load_checkpoint(self, checkpoint_path, load_it=None):
        """Load the checkpoint stored after iteration ``load_it``, the latest if None.
        """
        with h5py.File(checkpoint_path, 'r') as h5:
            if 'final_iteration' not in h5.attrs:
                raise ValueError(f'There are no checkpoints in {checkpoint_path}')

            if load_it is None:
                load_it = int(h5.attrs['final_iteration'])

            group_name = f'checkpoint_{load_it:05d}'
            if group_name not in h5:
                raise ValueError(f'There is no checkpoint {group_name} in {checkpoint_path}')

            decomposition = self.DecompositionType.load_from_hdf5_group(h5[group_name])
            self._check_valid_components(decomposition)
            self.decomposition = decomposition
            self._load_checkpoint_state(h5, load_it)

    def _load_checkpoint_state(self, h5, iteration):
        """Restore the optimisation state stored with the checkpoint of ``iteration``.
        """
        pass

    def _after_fit_iteration(self):
        for logger in self.loggers:
            logger.log(self)

        it = self.current_iteration
        if self.checkpoint_frequency > 0 and (it + 1) % self.checkpoint_frequency == 0:
            self.store_checkpoint()

        self.current_iteration += 1
