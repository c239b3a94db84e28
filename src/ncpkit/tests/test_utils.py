import numpy as np

from ncpkit import base, utils


def test_balance_factors_shares_norm_equally():
    factors = [np.random.uniform(size=(size, 3)) for size in (4, 5, 6)]
    balanced = utils.balance_factors(factors, 8)

    for factor, balanced_factor in zip(factors, balanced):
        assert np.isclose(np.linalg.norm(balanced_factor), 2)
        assert np.allclose(balanced_factor / np.linalg.norm(balanced_factor), factor / np.linalg.norm(factor))


def test_balance_zero_factor_does_not_fail():
    balanced = utils.balance_factors([np.zeros((3, 2)), np.ones((4, 2))], 4)
    assert np.all(balanced[0] == 0)
    assert np.all(np.isfinite(balanced[1]))


def test_create_non_negative_data():
    sizes = (5, 6, 7)
    tensor, factors, norms, noise = utils.create_non_negative_data(sizes, 3, random_state=0)
    expected = np.einsum('ir, jr, kr -> ijk', *factors)

    assert tensor.shape == sizes
    assert np.all(tensor >= 0)
    assert np.allclose(tensor, expected)
    assert len(norms) == 3
    assert np.all(noise >= 0)


def test_create_non_negative_data_with_noise():
    sizes = (5, 6, 7)
    noise_free, *_ = utils.create_non_negative_data(sizes, 3, random_state=1)
    noisy, _, _, noise = utils.create_non_negative_data(sizes, 3, noise_factor=0.1, random_state=1)

    assert np.all(noisy >= 0)
    assert np.isclose(np.linalg.norm(noisy - noise_free), 0.1*np.linalg.norm(noise_free))
    assert np.allclose(noisy - noise_free, 0.1*noise)


def test_normalize_factors():
    factors = [np.random.uniform(size=(size, 3)) for size in (4, 5)]
    normalized, norms = utils.normalize_factors(factors)

    for factor, normalized_factor, norm in zip(factors, normalized, norms):
        assert np.allclose(np.linalg.norm(normalized_factor, axis=0), 1)
        assert np.allclose(normalized_factor * norm, factor)


def test_count_near_zero():
    factor = np.array([[0, 1e-12], [1e-3, -1e-11], [2, 0]])
    assert utils.count_near_zero(factor) == 4
    assert utils.count_near_zero(factor, tol=1e-2) == 5


def test_uniform_factors_give_tensor_of_right_rank():
    factors, _ = utils.create_random_uniform_factors((4, 5, 6), 2, random_state=0)
    X = base.fold(factors[0] @ base.khatri_rao(*factors[1:]).T, 0, (4, 5, 6))

    assert np.linalg.matrix_rank(base.unfold(X, 0)) == 2


def test_count_nonzero_components():
    factor = np.array([[0, 1e-7, 1], [1e-8, 2e-6, 0]])
    assert utils.count_nonzero_components(factor) == 2
    assert utils.count_nonzero_components(factor, tol=0.5) == 1
