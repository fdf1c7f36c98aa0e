"""Exceptions raised by the Kalman filter engine.

Recoverable failures (:class:`NotPositiveDefiniteError`, :class:`NoInnovationError`) leave the
filter estimate (mean and covariance) untouched, so the caller may retry or skip the step.
"""

import torch.linalg


class KalmanFilterError(Exception):
    """Base class of every error raised by stateful_kf."""


class DimensionError(KalmanFilterError, ValueError):
    """A measure, a covariance or a model matrix does not match the filter dimensions."""


class NotPositiveDefiniteError(KalmanFilterError, torch.linalg.LinAlgError):
    """The innovation covariance S = H Pp Hᵀ + R cannot be Cholesky-factorized."""


class NoInnovationError(KalmanFilterError):
    """An update was requested but no valid evaluation exists since the last prediction."""
