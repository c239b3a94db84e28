import time
from abc import ABC, abstractmethod

import numpy as np

__all__ = [
    'BaseLogger', 'LossLogger', 'SSELogger', 'FitLogger', 'ExplainedVarianceLogger',
    'RegularisationPenaltyLogger', 'RelativeObjectiveChangeLogger', 'NumSubIts',
    'InnerToleranceLogger', 'DualNormLogger', 'Timer',
]


class BaseLogger(ABC):
    def __init__(self):
        self.log_metrics = []
        self.log_iterations = []
        self.prev_checkpoint_it = 0
        self.name = type(self).__name__

    @abstractmethod
    def _log(self, decomposer):
        pass

    def log(self, decomposer):
        """Logs metric and iterations by appending them to lists."""
        self._log(decomposer)
        self.log_iterations.append(decomposer.current_iteration)

    @property
    def latest_log_metrics(self):
        return self.log_metrics[self.prev_checkpoint_it:]

    @property
    def latest_log_iterations(self):
        return self.log_iterations[self.prev_checkpoint_it:]

    def _write_sequence_to_hd5_group(self, logname, logger_group, log):
        """Writes list of log values to HDF5 group.

        Arguments
        ---------
        logname: string
            Name of log. Used as name for a HDF5 dataset.
        logger_group: h5.Group
            Group to write the log to.
        log: list
            List containing the log values.
        """
        log = np.array(log)
        if logname in logger_group:
            old_length = logger_group[logname].shape[0]
            new_length = old_length + len(log)
            logger_group[logname].resize(new_length, axis=0)
            logger_group[logname][old_length:] = log
        else:
            logger_group.create_dataset(
                logname, shape=log.shape, maxshape=(None, *log.shape[1:]), dtype=log.dtype
            )
            logger_group[logname][...] = log

    def write_to_hdf5_group(self, h5group):
        """Writes log metrics and log iterations to HDF5 group."""
        if not self.latest_log_iterations:
            return
        logger_group = h5group.require_group(self.name)
        self._write_sequence_to_hd5_group('iterations', logger_group, self.latest_log_iterations)
        self._write_sequence_to_hd5_group('values', logger_group, self.latest_log_metrics)
        self.prev_checkpoint_it += len(self.latest_log_iterations)


class LossLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.loss)


class SSELogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.SSE)


class FitLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.fit_score)


class ExplainedVarianceLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.explained_variance)


class RegularisationPenaltyLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.regularisation_penalty)


class RelativeObjectiveChangeLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(decomposer.diagnostics.relative_objective_change[-1])


class NumSubIts(BaseLogger):
    """Number of inner iterations used for each mode."""
    def _log(self, decomposer):
        self.log_metrics.append(list(decomposer.diagnostics.inner_its[-1]))


class InnerToleranceLogger(BaseLogger):
    def _log(self, decomposer):
        self.log_metrics.append(np.array(decomposer.inner_tols))


class DualNormLogger(BaseLogger):
    """Norm of the solver state of each mode, zero for solvers without state."""
    def _log(self, decomposer):
        self.log_metrics.append([
            0 if dual_variable is None else np.linalg.norm(dual_variable)
            for dual_variable in decomposer.dual_variables
        ])


class Timer(BaseLogger):
    def __init__(self):
        super().__init__()
        self.initial_time = None

    def _log(self, decomposer):
        if self.initial_time is None:
            self.initial_time = time.process_time()
            current_time = self.initial_time
        else:
            current_time = time.process_time()
        self.log_metrics.append(current_time - self.initial_time)
