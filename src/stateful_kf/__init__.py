"""Stateful-KF: a step-by-step linear Kalman filter engine in PyTorch.

stateful-kf provides a reusable discrete-time linear Kalman filter meant to be
embedded in tracking or sensor-fusion applications. The filter owns its estimate
and every intermediate quantity of a step (prediction, innovation, gain), all
pre-allocated at construction, and is advanced one step at a time by its owner.

Getting started
---------------
The core API consists of:
- :class:`~stateful_kf.KalmanFilter` with :meth:`~stateful_kf.KalmanFilter.predict`,
  :meth:`~stateful_kf.KalmanFilter.evaluate` and :meth:`~stateful_kf.KalmanFilter.update`.
- :class:`~stateful_kf.GaussianState` snapshots, used to read back estimates and
  to gate measures (Mahalanobis distance, likelihood).

A step reads as::

    kf = KalmanFilter(2, 1)
    kf.process_matrix = ...
    kf.measurement_matrix = ...
    kf.predict()
    log_likelihood = kf.evaluate(measure)
    kf.update()

:mod:`stateful_kf.motion` builds ready-to-use constant-velocity models.

Numerical notes
---------------
Filters run in ``float64`` by default. The innovation covariance is inverted
through its Cholesky factor; a covariance that is not positive definite raises
:class:`~stateful_kf.NotPositiveDefiniteError` and leaves the estimate unchanged.
"""

from .errors import DimensionError, KalmanFilterError, NoInnovationError, NotPositiveDefiniteError
from .kalman_filter import GaussianState, KalmanFilter

__all__ = [
    "DimensionError",
    "GaussianState",
    "KalmanFilter",
    "KalmanFilterError",
    "NoInnovationError",
    "NotPositiveDefiniteError",
]
__version__ = "0.1.0"
