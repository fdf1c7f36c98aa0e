"""Helpers for building constant-velocity Kalman filters.

The state of a 1D constant-velocity model is ``[position, velocity]`` and only the position is
measured. The velocity is assumed constant over a time step and the process noise ``Q``
accounts for the unmodeled accelerations. Three noise models are supported:

- ``simple``: noise only on the velocity, ``Q = [[0, 0], [0, dt]]``.
- ``continuous``: continuous white noise on the acceleration, integrated over the time step.
- ``piecewise``: acceleration constant over each time step, drawn from a white noise.

These helpers only fill the model matrices of a :class:`KalmanFilter`; the filter itself
does not depend on them.
"""

from __future__ import annotations

import enum
import math

import torch

from .kalman_filter import KalmanFilter


class NoiseModel(str, enum.Enum):
    """Process noise models of a constant-velocity filter."""

    SIMPLE = "simple"
    CONTINUOUS = "continuous"
    PIECEWISE = "piecewise"


def process_noise(model: NoiseModel | str, dt=1.0, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    r"""Create the process noise covariance ``Q`` of a constant-velocity model.

    - simple::

        [[0, 0 ],
         [0, dt]]

    - continuous::

        [[dt^3 / 3, dt^2 / 2],
         [dt^2 / 2, dt      ]]

    - piecewise::

        [[dt^4 / 4, dt^3 / 2],
         [dt^3 / 2, dt^2    ]]

    Args:
        model (NoiseModel | str): Noise model, or its name.
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype): Dtype of the returned matrix.
            Default: float64

    Returns:
        torch.Tensor: Process noise covariance ``Q``.
            Shape: ``(2, 2)``

    Raises:
        ValueError: If the model is unknown.
    """
    model = NoiseModel(model)

    if model is NoiseModel.SIMPLE:
        noise = [[0.0, 0.0], [0.0, dt]]
    elif model is NoiseModel.CONTINUOUS:
        noise = [[dt**3 / 3, dt**2 / 2], [dt**2 / 2, dt]]
    else:
        noise = [[dt**4 / 4, dt**3 / 2], [dt**3 / 2, dt**2]]

    return torch.tensor(noise, dtype=dtype)


def process_matrix(order: int, dt=1.0, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    r"""Create the transition matrix ``F`` of a constant-derivative model.

    The state contains a value and its derivatives up to ``order``. Assuming the (order+1)-th
    derivative is zero, the Taylor expansion yields:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example:
        Constant velocity (``order = 1``)::

            [[1.0, dt ],
             [0.0, 1.0]]

    Args:
        order (int): Highest derivative included in the state (modeled as constant).
        dt (float): Time step duration.
            Default: 1.0
        dtype (torch.dtype): Dtype of the returned matrix.
            Default: float64

    Returns:
        torch.Tensor: Transition matrix ``F``
            Shape: ``(order + 1, order + 1)``
    """
    matrix = torch.zeros(order + 1, order + 1, dtype=dtype)
    for k in range(order + 1):
        matrix += torch.diag(torch.full((order + 1 - k,), dt**k / math.factorial(k), dtype=dtype), k)
    return matrix


def constant_velocity_filter(
    dt: float,
    measurement_var: float,
    *,
    noise_model: NoiseModel | str = NoiseModel.PIECEWISE,
    noise_dt: float | None = None,
    sigma_sq=1.0,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str | None = None,
) -> KalmanFilter:
    """Create a 1D constant-velocity Kalman filter measuring the position.

    The estimate is left at zero (mean and covariance): the caller sets its own prior.

    Args:
        dt (float): Time step of the transition matrix.
        measurement_var (float): Variance of the position measurements (``R``).
        noise_model (NoiseModel | str): Process noise model (or its name).
            Default: piecewise
        noise_dt (float | None): Time step used to build ``Q``. Default to ``dt``.
        sigma_sq (float): Scale of the process noise.
            Default: 1.0
        dtype (torch.dtype): Dtype of the filter.
            Default: float64
        device (torch.device | str | None): Device of the filter.

    Returns:
        KalmanFilter: Filter with ``state_dim = 2`` and ``measure_dim = 1``.
    """
    kf = KalmanFilter(2, 1, dtype=dtype, device=device)

    kf.process_matrix = process_matrix(1, dt, dtype=dtype)
    kf.process_noise = process_noise(noise_model, dt if noise_dt is None else noise_dt, dtype=dtype)
    kf.measurement_matrix = [[1.0, 0.0]]
    kf.measurement_noise = [[measurement_var]]
    kf.sigma_sq = sigma_sq

    return kf
