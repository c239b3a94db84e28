from . import base, utils
from .decomposition import NCP_BCD, Diagnostics, KruskalTensor, decompose

__version__ = '0.1.0'
