import numpy as np
from sklearn.utils import check_random_state

from . import base


def create_random_uniform_factors(sizes, rank, random_state=None):
    rng = check_random_state(random_state)
    factors = [rng.uniform(size=(size, rank)) for size in sizes]
    factors, norms = normalize_factors(factors)
    return factors, norms


def create_non_negative_data(sizes, rank, noise_factor=0, random_state=None):
    """Create a nonnegative tensor with a known nonnegative CP structure.

    Parameters:
    -----------
    sizes: tuple[int]
        Shape of the tensor
    rank: int
        Number of components in the CP structure
    noise_factor: float
        Norm of the added (absolute valued) noise relative to the norm
        of the noise free tensor.
    random_state: None, int or np.random.RandomState
        Seed for the random number generator.

    Returns:
    --------
    tensor: np.ndarray
    factors: list of np.ndarray
        Factor matrices with unit norm columns.
    norms: list of np.ndarray
        Column norms of the factor matrices before normalisation.
    noise: np.ndarray
        The unscaled noise tensor.
    """
    rng = check_random_state(random_state)
    factors, norms = create_random_uniform_factors(sizes=sizes, rank=rank, random_state=rng)
    tensor = base.fold(factors[0] @ base.khatri_rao(*factors[1:]).T, 0, sizes)

    noise = np.abs(rng.standard_normal(sizes))
    noise /= np.linalg.norm(noise)
    noise *= np.linalg.norm(tensor)

    tensor += noise_factor * noise
    return tensor, factors, norms, noise


def normalize_factor(factor, eps=1e-15):
    """Normalizes the columns of a factor matrix.

    Parameters:
    -----------
    factor: np.ndarray
        Factor matrix to normalize.
    eps: float
        Epsilon used to prevent division by zero.

    Returns:
    --------
    np.ndarray:
        Matrix where the columns are normalized to length one.
    np.ndarray:
        Norms of the columns before normalization.
    """
    norms = np.linalg.norm(factor, axis=0, keepdims=True)
    return factor / (norms + eps), norms


def normalize_factors(factors):
    """Normalizes the columns of each element in list of factors

    Parameters:
    -----------
    factor: list of np.ndarray
        List containing factor matrices to normalize.

    Returns:
    --------
    list of np.ndarray:
        List containing matrices where the columns are normalized
        to length one.
    list of np.ndarray:
        List containing the norms of the columns from before
        normalization.
    """
    normalized_factors = []
    norms = []

    for factor in factors:
        normalized_factor, norm = normalize_factor(factor)
        normalized_factors.append(normalized_factor)
        norms.append(norm)

    return normalized_factors, norms


def balance_factors(factors, target_norm, eps=1e-15):
    """Scale each factor matrix so its Frobenius norm is ``target_norm**(1/N)``.

    N is the number of factor matrices, so the scale of the tensor described
    by the factors is shared equally between the modes.
    """
    mode_norm = target_norm**(1/len(factors))
    return [factor / (np.linalg.norm(factor) + eps) * mode_norm for factor in factors]


def count_near_zero(factor, tol=1e-10):
    """Number of entries in ``factor`` with absolute value below ``tol``.
    """
    return int(np.sum(np.abs(factor) < tol))


def count_nonzero_components(factor, tol=1e-6):
    """Number of columns in ``factor`` with at least one entry above ``tol``.
    """
    return int(np.sum(np.any(factor > tol, axis=0)))
