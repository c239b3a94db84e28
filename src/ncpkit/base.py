"""
Tensor algebra used by the nonnegative CP decomposers.
"""
import numpy as np
import scipy.linalg as sla


def khatri_rao_binary(A, B):
    """Calculates the Khatri-Rao product of A and B

    A and B have to have the same number of columns.
    """
    I, K = A.shape
    J, K = B.shape

    out = np.empty((I * J, K))
    # Equivalent to a column-wise kron, but faster with C-contiguous arrays
    for i, row in enumerate(A):
        out[i*J:(i+1)*J] = row[np.newaxis, :]*B
    return out


def khatri_rao(*factors, skip=None):
    """Calculates the Khatri-Rao product of a list of matrices.

    Also known as the column-wise Kronecker product

    Parameters:
    -----------
    *factors: np.ndarray list
        List of factor matrices. The matrices have to all have
        the same number of columns.
    skip: int or None (optional, default is None)
        Optional index to skip in the product. If None, no index
        is skipped.

    Returns:
    --------
    product: np.ndarray
        Khatri-Rao product. A matrix of shape (prod(N_i), M)
        Where prod(N_i) is the product of the number of rows in each
        matrix in `factors`. And M is the number of columns in all
        matrices in `factors`.
    """
    factors = list(factors).copy()
    if skip is not None:
        factors.pop(skip)

    num_factors = len(factors)
    product = factors[0]

    for i in range(1, num_factors):
        product = khatri_rao_binary(product, factors[i])
    return product


def matrix_khatri_rao_product(X, factors, mode):
    """Compute the matricised tensor times Khatri Rao product along given mode.

    Parameters
    ----------
    X : np.ndarray
        Tensor
    factors : List[np.ndarray]
        List of factor matrices, the i-th factor matrix has shape [X.shape[i], rank]
    mode : int
        Which mode to unfold the tensor along. Should be between 0 and /len(factors) - 1)

    Returns
    -------
    np.ndarray
        Matrix of shape [X.shape[mode], rank]
    """
    if len(X.shape) != len(factors):
        raise ValueError(
            f'The tensor has {len(X.shape)} modes, but {len(factors)} factor matrices were given.'
        )
    if len(factors) == 3:
        return _mttkrp3(X, factors, mode)

    return unfold(X, mode) @ khatri_rao(*tuple(factors), skip=mode)


def _mttkrp3(X, factors, mode):
    if mode == 0:
        return X.reshape(X.shape[0], -1) @ khatri_rao(*tuple(factors), skip=mode)
    elif mode == 1:
        return _mttkrp_mid(X, factors)
    elif mode == 2 or mode == -1:
        return np.moveaxis(X, -1, 0).reshape(X.shape[-1], -1) @ khatri_rao(
            *tuple(factors), skip=mode
        )
    raise ValueError(f'Mode must be 0, 1 or 2 for third order tensors, not {mode}.')


def _mttkrp_mid(tensor, matrices):
    krp = khatri_rao(*matrices, skip=1)
    return _mttkrp_mid_with_krp(tensor, krp)


def _mttkrp_mid_with_krp(tensor, krp):
    shape = tensor.shape

    block_size = shape[-1]
    num_rows = shape[-2]
    num_cols = krp.shape[-1]
    product = np.zeros((num_rows, num_cols))
    for i in range(shape[0]):
        product += tensor[i] @ krp[i * block_size : (i + 1) * block_size]

    return product


def gram_product(factor_matrices, skip=None):
    """Elementwise product of the Gram matrices of the factor matrices.

    This is the coefficient matrix of the normal equations for the factor
    matrix with index ``skip``.

    Parameters
    ----------
    factor_matrices : List[np.ndarray]
        Factor matrices that all have ``rank`` columns.
    skip : int or None
        Index of the factor matrix to leave out of the product.

    Returns
    -------
    np.ndarray
        Symmetric positive semi-definite matrix of shape [rank, rank]
    """
    rank = factor_matrices[0].shape[1]
    V = np.ones((rank, rank))
    for i, factor_matrix in enumerate(factor_matrices):
        if i == skip:
            continue
        V *= factor_matrix.T @ factor_matrix
    return V


def leading_eigenvectors(X, mode, num_vectors):
    """The ``num_vectors`` leading eigenvectors of :math:`X_{(n)} X_{(n)}^T`.

    Parameters
    ----------
    X : np.ndarray
        Tensor
    mode : int
        Mode of the unfolding the eigenvectors are computed for.
    num_vectors : int
        How many eigenvectors to return. If it is not positive, an
        empty matrix is returned.

    Returns
    -------
    np.ndarray
        Matrix of shape [X.shape[mode], num_vectors] with the eigenvectors
        sorted by decreasing eigenvalue.
    """
    length = X.shape[mode]
    if num_vectors <= 0:
        return np.empty((length, 0))
    if num_vectors > length:
        raise ValueError(
            f'Cannot compute {num_vectors} eigenvectors for a mode of length {length}.'
        )

    unfolded_X = unfold(X, mode)
    gram = unfolded_X @ unfolded_X.T
    _, eigenvectors = sla.eigh(gram, subset_by_index=[length - num_vectors, length - 1])
    return eigenvectors[:, ::-1]


def unfold(A, n):
    """Unfold tensor to matricizied form.

    Parameters:
    -----------
    A: np.ndarray
        Tensor to unfold.
    n: int
        Defines which mode to unfold along.

    Returns:
    --------
    M: np.ndarray
        The mode-n unfolding of `A`
    """

    M = np.moveaxis(A, n, 0).reshape(A.shape[n], -1)
    return M


def fold(M, n, shape):
    """Fold a matrix to a higher order tensor.

    The folding is structured to refold an mode-n unfolded
    tensor back to its original form.

    Parameters:
    -----------
    M: np.ndarray
        Matrix that corresponds to a mode-n unfolding of a
        higher order tensor
    n: int
        Mode of the unfolding
    shape: tuple or list
        Shape of the folded tensor

    Returns:
    --------
    np.ndarray
        Folded tensor of shape `shape`
    """
    newshape = list(shape)
    mode_dim = newshape.pop(n)
    newshape.insert(0, mode_dim)

    return np.moveaxis(np.reshape(M, newshape), 0, n)
