import numpy as np
import pytest

from ncpkit import base


@pytest.fixture
def random_factors():
    return [np.random.uniform(size=(size, 3)) for size in (4, 5, 6, 7)]


def test_khatri_rao_binary_is_columnwise_kronecker():
    A = np.random.standard_normal((3, 2))
    B = np.random.standard_normal((4, 2))
    product = base.khatri_rao_binary(A, B)

    assert product.shape == (12, 2)
    for r in range(2):
        assert np.allclose(product[:, r], np.kron(A[:, r], B[:, r]))


def test_khatri_rao_skips_factor(random_factors):
    A, B, C, D = random_factors
    product = base.khatri_rao(A, B, C, D, skip=2)

    expected = base.khatri_rao_binary(base.khatri_rao_binary(A, B), D)
    assert np.allclose(product, expected)


@pytest.mark.parametrize('num_modes', [3, 4])
def test_matrix_khatri_rao_product(random_factors, num_modes):
    factors = random_factors[:num_modes]
    X = np.random.uniform(size=[len(factor) for factor in factors])

    for mode in range(num_modes):
        mttkrp = base.matrix_khatri_rao_product(X, factors, mode)
        expected = base.unfold(X, mode) @ base.khatri_rao(*factors, skip=mode)

        assert mttkrp.shape == (X.shape[mode], 3)
        assert np.allclose(mttkrp, expected)


def test_matrix_khatri_rao_product_matches_einsum(random_factors):
    A, B, C = random_factors[:3]
    X = np.random.uniform(size=(4, 5, 6))

    assert np.allclose(base.matrix_khatri_rao_product(X, [A, B, C], 0), np.einsum('ijk, jr, kr -> ir', X, B, C))
    assert np.allclose(base.matrix_khatri_rao_product(X, [A, B, C], 1), np.einsum('ijk, ir, kr -> jr', X, A, C))
    assert np.allclose(base.matrix_khatri_rao_product(X, [A, B, C], 2), np.einsum('ijk, ir, jr -> kr', X, A, B))


def test_matrix_khatri_rao_product_with_wrong_number_of_factors_fails(random_factors):
    X = np.random.uniform(size=(4, 5, 6))
    with pytest.raises(ValueError):
        base.matrix_khatri_rao_product(X, random_factors, 0)


def test_fold_is_inverse_of_unfold():
    X = np.random.standard_normal((3, 4, 5, 6))
    for mode in range(X.ndim):
        unfolded = base.unfold(X, mode)

        assert unfolded.shape == (X.shape[mode], X.size // X.shape[mode])
        assert np.array_equal(base.fold(unfolded, mode, X.shape), X)


def test_gram_product(random_factors):
    product = base.gram_product(random_factors, skip=1)
    krp = base.khatri_rao(*random_factors, skip=1)

    assert np.allclose(product, krp.T @ krp)
    assert np.allclose(base.gram_product(random_factors), base.khatri_rao(*random_factors).T @ base.khatri_rao(*random_factors))


class TestLeadingEigenvectors:
    @pytest.fixture
    def X(self):
        return np.random.uniform(size=(6, 5, 4))

    def test_eigenvectors_are_sorted_by_eigenvalue(self, X):
        unfolded = base.unfold(X, 0)
        eigenvalues, eigenvectors = np.linalg.eigh(unfolded @ unfolded.T)
        leading = base.leading_eigenvectors(X, 0, 3)

        assert leading.shape == (6, 3)
        for r in range(3):
            expected = eigenvectors[:, -1 - r]
            assert np.isclose(abs(leading[:, r] @ expected), 1)

    def test_no_eigenvectors(self, X):
        assert base.leading_eigenvectors(X, 1, 0).shape == (5, 0)
        assert base.leading_eigenvectors(X, 1, -1).shape == (5, 0)

    def test_too_many_eigenvectors_fails(self, X):
        with pytest.raises(ValueError):
            base.leading_eigenvectors(X, 2, 5)
