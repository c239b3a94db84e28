from abc import ABC, abstractmethod

import h5py
import numpy as np
from sklearn.utils import check_random_state

from .. import base

__all__ = ['KruskalTensor']


class BaseDecomposedTensor(ABC):
    @abstractmethod
    def __init__(self):
        raise NotImplementedError

    @abstractmethod
    def construct_tensor(self):
        raise NotImplementedError

    @abstractmethod
    def __getitem__(self, item):
        raise NotImplementedError

    def store(self, filename):
        with h5py.File(filename, 'w') as h5:
            self.store_in_hdf5_group(h5)

    @abstractmethod
    def store_in_hdf5_group(self, group):
        raise NotImplementedError

    def _prepare_hdf5_group(self, group):
        group.attrs['type'] = type(self).__name__

    @classmethod
    def from_file(cls, filename):
        with h5py.File(filename, 'r') as h5:
            return cls.load_from_hdf5_group(h5)

    @classmethod
    @abstractmethod
    def load_from_hdf5_group(cls, group):
        raise NotImplementedError

    @classmethod
    def _check_hdf5_group(cls, group):
        if not group.attrs['type'] == cls.__name__:
            raise Warning(f'The `type` attribute of the HDF5 group is not'
                          f' "{cls.__name__}, but "{group.attrs["type"]}"\n.'
                          'This might mean that you\'re loading the wrong tensor file')


class KruskalTensor(BaseDecomposedTensor):
    r"""Container class for KruskalTensors.

    KruskalTensors are decompositions of a tensor :math:`\mathcal{X}` as
    a sum of rank one components. For third order tensors

    .. math::

        \mathcal{X}_{i j k} = \sum_{r=1}^R w_r A_{i r} B_{j r} C_{k r},

    where :math:`R` is the rank of the decomposition and :math:`w_r` is
    the rth weight. The nonnegative decomposers in this package keep all
    weights equal to one and store the scale in the factor matrices.

    Arguments:
    ----------
    factor_matrices: list(np.ndarray)
        A list of :math:`n` factor matrices, where :math:`n`
        is the number of modes in the decomposed tensor.
        Each factor matrix, :math:`U_i` has size :math:`(l_i \times R)`,
        where :math:`l_i` is the length of the tensor along the `i-th`
        mode and :math:`R` is the rank of the decomposition.
    weights: np.ndarray (optional, default=None)
        A list of :math:`R` weights. If None, the weights are all 1.
    """
    fm_template = 'factor_matrix{:03d}'

    def __init__(self, factor_matrices, weights=None):
        self.rank = factor_matrices[0].shape[1]

        for i, factor_matrix in enumerate(factor_matrices):
            if factor_matrix.shape[1] != self.rank:
                raise ValueError(
                    f'All factor matrices must have the same number of columns. \n'
                    f'The first factor matrix has {self.rank} columns, whereas the {i}-th '
                    f'has {factor_matrix.shape[1]} columns.'
                )

        self.factor_matrices = list(factor_matrices)
        if weights is None:
            weights = np.ones(self.rank)
        elif len(weights) != self.rank:
            raise ValueError(
                f'There must be as many weights as there are columns in the factor matrices.'
                f'The factor matrices has {self.rank} columns, but there are {len(weights)} weights.'
            )
        self.weights = np.asarray(weights, dtype=float)

    @property
    def shape(self):
        return [fm.shape[0] for fm in self.factor_matrices]

    @property
    def is_nonnegative(self):
        return all(np.all(fm >= 0) for fm in self.factor_matrices) and np.all(self.weights >= 0)

    def construct_tensor(self):
        shape = self.shape
        tensor = (self.weights[np.newaxis] * self.factor_matrices[0]) @ base.khatri_rao(*self.factor_matrices[1:]).T

        return base.fold(tensor, 0, shape=shape)

    def normalize_components(self, update_weights=True, eps=1e-15):
        """Set all factor matrices to unit length. Updates the weights if `update_weights` is True.

        Arguments:
        ----------
        update_weights : bool
            If true, then the weights of this Kruskal tensor will be set to the product of the
            component norms.
        """
        for i, factor_matrix in enumerate(self.factor_matrices):
            norms = np.linalg.norm(factor_matrix, axis=0)
            self.factor_matrices[i] = factor_matrix/(norms[np.newaxis] + eps)
            if update_weights:
                self.weights *= norms

        return self

    @classmethod
    def random_init(cls, sizes, rank, random_method='uniform', random_state=None):
        """Construct a random Kruskal tensor with unit vectors as components and unit weights.

        Arguments:
        ----------
        sizes : tuple[int]
            The length of each mode of the generated Kruskal tensor.
        rank : int
            Rank of the generated Kruskal tensor.
        random_method : str
            Which distribution to draw numbers from 'normal' or 'uniform'. All vectors are scaled to unit norm.
            If 'normal', a standard normal distribution is used. If 'uniform' a uniform [0, 1) distribution is used.
        random_state : None, int or np.random.RandomState
            Seed for the random number generator.
        """
        rng = check_random_state(random_state)
        if random_method.lower() == 'normal':
            factor_matrices = [rng.standard_normal((size, rank)) for size in sizes]
        elif random_method.lower() == 'uniform':
            factor_matrices = [rng.uniform(size=(size, rank)) for size in sizes]
        else:
            raise ValueError("`random_method` must be either 'normal' or 'uniform'")

        return cls(factor_matrices).normalize_components(update_weights=False)

    def store_in_hdf5_group(self, group):
        self._prepare_hdf5_group(group)

        group.attrs['n_factor_matrices'] = len(self.factor_matrices)
        group.attrs['rank'] = self.rank

        for i, factor_matrix in enumerate(self.factor_matrices):
            group[self.fm_template.format(i)] = factor_matrix

        group['weights'] = self.weights

    @classmethod
    def load_from_hdf5_group(cls, group):
        cls._check_hdf5_group(group)

        factor_matrices = [
            group[cls.fm_template.format(i)][...]
                for i in range(group.attrs['n_factor_matrices'])
        ]
        weights = group['weights'][...]

        return cls(factor_matrices, weights)

    def __getitem__(self, item):
        return self.factor_matrices[item]

    def __len__(self):
        return len(self.factor_matrices)
