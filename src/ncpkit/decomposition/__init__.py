from .base_decomposer import BaseDecomposer
from .decompositions import KruskalTensor
from .ncp import NCP_BCD, Diagnostics, decompose
from .nnls import HALS, BaseNNLSSolver, MultiplicativeUpdate, ScaledADMM, get_nnls_solver
from . import logging
