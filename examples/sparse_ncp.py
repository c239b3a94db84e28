import argparse

import numpy as np
import matplotlib.pyplot as plt

from ncpkit import decomposition, utils


def run_sparse_ncp(sizes, true_rank, rank, sparsity, noise_level, solver, max_its, max_time, tol, random_state):
    X, _, _, _ = utils.create_non_negative_data(
        sizes, true_rank, noise_factor=noise_level, random_state=random_state
    )
    regparams = np.tile([0, sparsity], (len(sizes), 1))

    loggers = {
        'loss': decomposition.logging.LossLogger(),
        'fit': decomposition.logging.FitLogger(),
    }
    ktensor, diagnostics = decomposition.decompose(
        X, rank, tol=tol, maxiters=max_its, maxtime=max_time, init='random',
        regparams=regparams, stop='fit', printitn=1, solver=solver,
        loggers=list(loggers.values()), random_state=random_state,
    )

    print()
    print(f'Total iteration is {diagnostics.iter}.')
    print(f'Elapsed time is {diagnostics.time[-1]:4.1f} seconds.')
    print(f'Objective function value is {diagnostics.obj[-1]:.4e}')
    print(f'Solution relative error = {diagnostics.relerr[1, -1]:4.4f}\n')

    print('Nonzero Components Number:')
    for mode, factor_matrix in enumerate(ktensor.factor_matrices):
        print(f'Nonzero Components Number of factor {mode}:\t{utils.count_nonzero_components(factor_matrix)}')

    return ktensor, diagnostics, loggers


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("rank", type=int)
    parser.add_argument("--sizes", default=[30, 40, 50], type=int, nargs="+")
    parser.add_argument("--true_rank", default=5, type=int)
    parser.add_argument("--sparsity", default=0.0, type=float)
    parser.add_argument("--noise_level", default=0.1, type=float)
    parser.add_argument("--solver", default="admm", type=str)
    parser.add_argument("--max_its", default=500, type=int)
    parser.add_argument("--max_time", default=120, type=float)
    parser.add_argument("--tol", default=1e-8, type=float)
    parser.add_argument("--random_state", default=None, type=int)
    args = parser.parse_args()

    ktensor, diagnostics, loggers = run_sparse_ncp(
        sizes=args.sizes, true_rank=args.true_rank, rank=args.rank, sparsity=args.sparsity,
        noise_level=args.noise_level, solver=args.solver, max_its=args.max_its,
        max_time=args.max_time, tol=args.tol, random_state=args.random_state,
    )

    fig, axes = plt.subplots(1, 2)
    axes[0].set_title('Objective function value')
    axes[0].semilogy(diagnostics.time, diagnostics.obj)
    axes[0].set_xlabel('Time (s)')
    axes[1].set_title('Fit')
    axes[1].plot(loggers['fit'].log_iterations, loggers['fit'].log_metrics)
    axes[1].set_xlabel('Iteration')
    plt.show()
