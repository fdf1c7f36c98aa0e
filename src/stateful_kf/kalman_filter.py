from __future__ import annotations

import contextlib
import dataclasses
import logging
import math
from typing import overload

import torch
import torch.linalg

from .errors import DimensionError, NoInnovationError, NotPositiveDefiniteError

# Note on memory:
# Every intermediate quantity has a dedicated buffer allocated once in `__init__`.
# predict/evaluate/update only write into these buffers (out=... or in-place ops),
# so that a step never allocates matrices whose size depends on the filter dimensions.

logger = logging.getLogger(__name__)


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


@dataclasses.dataclass
class GaussianState:
    """Gaussian state, used to read back snapshots of the filter.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` (e.g. time in `KalmanFilter.filter`) can be indexed.

    An optional precision matrix (inverse covariance) can be stored. When present, it is re-used
    by the Mahalanobis distance and the likelihood (gating / association of measures).

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index the leading dimensions (for instance the time dimension)."""
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute squared Mahalanobis distance to a measure.

            MAHA^2 = (z - μ)^T Σ^{-1} (z - μ)

        Args:
            measure (torch.Tensor): Measure to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance
                Shape: ``(...)``
        """
        diff = self.mean - measure
        if self.precision is None:
            self.precision = self.covariance.inverse()
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute Mahalanobis distance to a measure (square root of `mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of the given measure under the Gaussian distribution.

        For dimension ``dim``:

            log p(z) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood of the measure
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        log_det = torch.logdet(self.covariance)
        dim = self.covariance.shape[-1]
        return -0.5 * (dim * math.log(2 * math.pi) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the likelihood of the given measure (exponential of the log-likelihood)."""
        return self.log_likelihood(measure).exp()


class _Buffer:
    """Expose a pre-allocated tensor of the filter.

    Reading returns the buffer itself. Writing (when allowed) checks the shape
    and copies the value inside the existing buffer.
    """

    def __init__(self, writable=True) -> None:
        self.writable = writable
        self.name = ""

    def __set_name__(self, owner, name: str) -> None:
        self.name = name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return instance._buffers[self.name]  # noqa: SLF001

    def __set__(self, instance, value) -> None:
        if not self.writable:
            raise AttributeError(f"{self.name} is computed by the filter and cannot be set")
        buffer = instance._buffers[self.name]  # noqa: SLF001
        buffer.copy_(instance._check(value, buffer.shape, self.name))  # noqa: SLF001


class KalmanFilter:
    """Stateful discrete-time linear Kalman filter.

    The filter estimates the hidden state of a linear dynamical system under Gaussian noise:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k     + v_k,   v_k ~ N(0, R)

    In contrast with a functional implementation, the filter owns its estimate (x, P) and every
    intermediate quantity of the current step. A step follows a strict protocol:

        kf.predict()                  # Fx, Pp
        kf.evaluate(measure)          # y, S, S_low, S_inv, Sdet (optional, see `update`)
        kf.update()                   # K, x, P

    `update(measure)` is a shortcut for `evaluate(measure)` followed by `update()`.

    All tensors are allocated at construction and reused afterwards. Model matrices, the initial
    estimate and the tuning scalars can be changed by the caller between two steps; assignments are
    copied into the existing buffers after a shape check.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(dim, 1)``. Assignments also accept ``(dim,)``.
    - The filter is neither batched nor thread-safe: use one filter per track.

    Attributes:
        process_matrix (torch.Tensor): Process/Transition matrix ``F``. Default: identity.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``. Default: zeros.
            Shape: ``(dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``. Default: zeros.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (torch.Tensor): Default measurement noise covariance ``R``. Default: identity.
            It should never be zero, as it would make the innovation covariance singular.
            Shape: ``(dim_z, dim_z)``
        mean (torch.Tensor): Current state estimate ``x``.
            Shape: ``(dim_x, 1)``
        covariance (torch.Tensor): Current state covariance ``P``.
            Shape: ``(dim_x, dim_x)``
        predicted_mean (torch.Tensor): Predicted state ``Fx`` (read-only).
            Shape: ``(dim_x, 1)``
        predicted_covariance (torch.Tensor): Predicted covariance ``Pp`` (read-only).
            Shape: ``(dim_x, dim_x)``
        projected_mean (torch.Tensor): Measurement prediction ``Hx`` computed by `predict` (read-only).
            Shape: ``(dim_z, 1)``
        kalman_gain (torch.Tensor): Last Kalman gain ``K`` (read-only).
            Shape: ``(dim_x, dim_z)``
        innovation (torch.Tensor): Last innovation ``y = z - H Fx`` (read-only).
            Shape: ``(dim_z, 1)``
        innovation_covariance (torch.Tensor): Innovation covariance ``S = H Pp Hᵀ + R`` (read-only).
            Shape: ``(dim_z, dim_z)``
        innovation_cholesky (torch.Tensor): Lower Cholesky factor of ``S`` (read-only).
            Shape: ``(dim_z, dim_z)``
        innovation_precision (torch.Tensor): Inverse of ``S`` (read-only).
            Shape: ``(dim_z, dim_z)``
        innovation_det (float): Determinant of ``S``.
        innovation_valid (bool): True iff the innovation quantities match the current prediction.
        alpha_sq (float): Fading memory factor (>= 1.0). 1.0 is a perfect memory, larger values
            inflate the predicted covariance to forget the past faster.
        sigma_sq (float): Scale applied to the process noise ``Q`` during prediction.
    """

    _REPR_SPLIT_LENGTH = 110

    process_matrix = _Buffer()
    measurement_matrix = _Buffer()
    process_noise = _Buffer()
    measurement_noise = _Buffer()
    mean = _Buffer()
    covariance = _Buffer()

    predicted_mean = _Buffer(writable=False)
    predicted_covariance = _Buffer(writable=False)
    projected_mean = _Buffer(writable=False)
    kalman_gain = _Buffer(writable=False)
    innovation = _Buffer(writable=False)
    innovation_covariance = _Buffer(writable=False)
    innovation_cholesky = _Buffer(writable=False)
    innovation_precision = _Buffer(writable=False)

    def __init__(
        self,
        state_dim: int,
        measure_dim: int,
        *,
        dtype: torch.dtype = torch.float64,
        device: torch.device | str | None = None,
    ) -> None:
        if state_dim <= 0 or measure_dim <= 0:
            raise ValueError(f"Dimensions must be positive, got state_dim={state_dim}, measure_dim={measure_dim}")

        self._state_dim = state_dim
        self._measure_dim = measure_dim

        def zeros(*shape: int) -> torch.Tensor:
            return torch.zeros(shape, dtype=dtype, device=device)

        n, m = state_dim, measure_dim
        self._buffers = {
            # Model
            "process_matrix": torch.eye(n, dtype=dtype, device=device),
            "measurement_matrix": zeros(m, n),
            "process_noise": zeros(n, n),
            # R must not be zero. Identity may be a very large error, but it keeps S invertible.
            "measurement_noise": torch.eye(m, dtype=dtype, device=device),
            # Estimates
            "mean": zeros(n, 1),
            "covariance": zeros(n, n),
            "predicted_mean": zeros(n, 1),
            "predicted_covariance": zeros(n, n),
            "projected_mean": zeros(m, 1),
            "kalman_gain": zeros(n, m),
            # Innovation
            "innovation": zeros(m, 1),
            "innovation_covariance": zeros(m, m),
            "innovation_cholesky": zeros(m, m),
            "innovation_precision": zeros(m, m),
        }

        # Scratch memory
        self._ky = zeros(n, 1)
        self._kh = zeros(n, n)
        self._fp = zeros(n, n)
        self._pht = zeros(n, m)
        self._info = torch.zeros((), dtype=torch.int32, device=device)

        self.innovation_valid = False
        self.innovation_det = 1.0
        self._alpha_sq = 1.0  # Memory fading KF (As in filterpy)
        self.sigma_sq = 1.0

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measure_dim

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self._buffers["process_matrix"].device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._buffers["process_matrix"].dtype

    @property
    def alpha_sq(self) -> float:
        """Fading memory factor. Must be >= 1.0 (1.0 = perfect memory)."""
        return self._alpha_sq

    @alpha_sq.setter
    def alpha_sq(self, value: float) -> None:
        if not value >= 1.0:  # Also rejects NaN
            raise ValueError(f"The fading memory factor must be >= 1.0, got {value}")
        self._alpha_sq = float(value)

    @property
    def state(self) -> GaussianState:
        """Copy of the current estimate N(x, P)."""
        return GaussianState(self.mean.clone(), self.covariance.clone())

    @property
    def prior(self) -> GaussianState:
        """Copy of the last prediction N(Fx, Pp)."""
        return GaussianState(self.predicted_mean.clone(), self.predicted_covariance.clone())

    @property
    def projection(self) -> GaussianState:
        """Copy of the expected measure distribution N(H Fx, S), with S^{-1} as precision.

        Raises:
            NoInnovationError: If no valid evaluation exists for the current prediction.
        """
        if not self.innovation_valid:
            raise NoInnovationError("The innovation covariance has not been evaluated since the last prediction")

        return GaussianState(
            self.measurement_matrix @ self.predicted_mean,
            self.innovation_covariance.clone(),
            self.innovation_precision.clone(),
        )

    def _check(self, value, shape: torch.Size, name: str) -> torch.Tensor:
        """Convert `value` to the filter format and check its shape.

        Column vectors (shape ``(dim, 1)``) can also be given as ``(dim,)``.
        """
        value = torch.as_tensor(value, dtype=self.dtype, device=self.device)
        if value.shape == shape:
            return value
        if shape[-1] == 1 and value.shape == shape[:-1]:
            return value[..., None]
        raise DimensionError(f"{name} should have shape {tuple(shape)}, got {tuple(value.shape)}")

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        The model, the current estimate and the tuning scalars are copied.
        The returned filter has no valid innovation: a prediction is expected first.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format
        """
        if isinstance(fmt, torch.dtype):
            kf = KalmanFilter(self.state_dim, self.measure_dim, dtype=fmt, device=self.device)
        else:
            kf = KalmanFilter(self.state_dim, self.measure_dim, dtype=self.dtype, device=fmt)

        for name in ("process_matrix", "measurement_matrix", "process_noise", "measurement_noise", "mean", "covariance"):
            setattr(kf, name, getattr(self, name).to(fmt))

        kf.alpha_sq = self.alpha_sq
        kf.sigma_sq = self.sigma_sq
        return kf

    def reset(self) -> None:
        """Reset the innovation validity and the tuning scalars to their defaults.

        The current estimate (x, P) and the model (F, H, Q, R) are left untouched:
        it does not restart the estimation from scratch.
        """
        self.innovation_valid = False
        self.innovation_det = 1.0
        self._alpha_sq = 1.0
        self.sigma_sq = 1.0
        logger.debug("Kalman filter reset (alpha_sq and sigma_sq back to 1.0)")

    def predict(self) -> None:
        """Compute the predicted (prior) state from the current estimate.

        From x_{k-1} ~ N(x, P), it applies the process model:

            Fx = F x
            Pp = alpha_sq F P Fᵀ + sigma_sq Q

        The measurement prediction Hx = H x is also refreshed.
        The current estimate (x, P) is not modified, and any previous evaluation becomes stale.
        """
        process_matrix = self.process_matrix

        torch.mm(process_matrix, self.mean, out=self._buffers["predicted_mean"])
        torch.mm(self.measurement_matrix, self.mean, out=self._buffers["projected_mean"])

        torch.mm(process_matrix, self.covariance, out=self._fp)
        torch.addmm(
            self.process_noise,
            self._fp,
            process_matrix.mT,
            beta=self.sigma_sq,
            alpha=self._alpha_sq,
            out=self._buffers["predicted_covariance"],
        )

        self.innovation_valid = False

    def evaluate(self, measure, measurement_noise=None) -> float:
        """Evaluate a measure against the current prediction.

        It computes the innovation and its covariance:

            PHt = Pp Hᵀ
            S = H PHt + R
            y = z - H Fx

        then the lower Cholesky factor of S, from which are derived its determinant
        (the squared product of the factor diagonal) and its inverse.

        Args:
            measure (torch.Tensor): Measure ``z``.
                Shape: ``(dim_z, 1)`` or ``(dim_z,)``
            measurement_noise (torch.Tensor | None): Covariance of this measure. If None, the filter
                ``measurement_noise`` is used.
                Shape: ``(dim_z, dim_z)``

        Returns:
            float: Log-likelihood of the measure, i.e. of the innovation y ~ N(0, S):
                log p = -1/2 * ( dim_z*log(2π) + log|S| + yᵀ S^{-1} y )

        Raises:
            DimensionError: If the measure or the covariance do not match ``dim_z``.
            NotPositiveDefiniteError: If S is not positive definite. The estimate is not modified
                and the evaluation is invalidated.
        """
        buffers = self._buffers
        m = self.measure_dim

        measure = self._check(measure, torch.Size((m, 1)), "measure")
        if measurement_noise is None:
            measurement_noise = self.measurement_noise
        else:
            measurement_noise = self._check(measurement_noise, torch.Size((m, m)), "measurement_noise")

        measurement_matrix = self.measurement_matrix

        # PHt is overwritten (never accumulated) so that the gain only depends on the current prediction
        torch.mm(self.predicted_covariance, measurement_matrix.mT, out=self._pht)
        torch.addmm(measurement_noise, measurement_matrix, self._pht, out=buffers["innovation_covariance"])
        torch.addmm(measure, measurement_matrix, self.predicted_mean, alpha=-1.0, out=buffers["innovation"])

        torch.linalg.cholesky_ex(
            buffers["innovation_covariance"], out=(buffers["innovation_cholesky"], self._info)
        )
        if self._info.item() != 0:
            self.innovation_valid = False
            logger.debug("Innovation covariance is not positive definite (minor of order %d)", self._info.item())
            raise NotPositiveDefiniteError(
                f"The innovation covariance is not positive definite (minor of order {self._info.item()})"
            )

        diagonal = self.innovation_cholesky.diagonal()
        self.innovation_det = diagonal.prod().item() ** 2
        torch.cholesky_inverse(self.innovation_cholesky, out=buffers["innovation_precision"])

        self.innovation_valid = True

        innovation = self.innovation
        maha_2 = (innovation.mT @ self.innovation_precision @ innovation).item()
        log_det = 2 * diagonal.log().sum().item()
        return -0.5 * (m * math.log(2 * math.pi) + log_det + maha_2)

    def update(self, measure=None, measurement_noise=None) -> None:
        """Update the estimate with the innovation of the current step.

        If a measure is given, `evaluate` is called first. Otherwise, the last valid evaluation is
        re-used (it must have happened after the last `predict`).

            K = Pp Hᵀ S^{-1}
            x = Fx + K y
            P = Pp - K H Pp

        Args:
            measure (torch.Tensor | None): Optional measure ``z``.
                Shape: ``(dim_z, 1)`` or ``(dim_z,)``
            measurement_noise (torch.Tensor | None): Optional covariance of the measure. If None, the
                filter ``measurement_noise`` is used.
                Shape: ``(dim_z, dim_z)``

        Raises:
            DimensionError: If the measure or the covariance do not match ``dim_z``.
            NotPositiveDefiniteError: If the evaluation of the measure fails.
            NoInnovationError: If no measure is given and no valid evaluation exists.
                The estimate is not modified.
        """
        if measure is not None:
            self.evaluate(measure, measurement_noise)

        if not self.innovation_valid:
            logger.debug("Update skipped: no valid innovation since the last prediction")
            raise NoInnovationError("The innovation covariance has not been evaluated since the last prediction")

        buffers = self._buffers
        kalman_gain = buffers["kalman_gain"]
        predicted_covariance = self.predicted_covariance

        torch.mm(self._pht, self.innovation_precision, out=kalman_gain)

        torch.mm(kalman_gain, self.innovation, out=self._ky)
        torch.add(self.predicted_mean, self._ky, out=buffers["mean"])

        # Pp already holds the process noise, it is not added back here
        torch.mm(kalman_gain, self.measurement_matrix, out=self._kh)
        torch.addmm(predicted_covariance, self._kh, predicted_covariance, alpha=-1.0, out=buffers["covariance"])

    def skip_update(self) -> None:
        """Accept the prediction as the new estimate when no measure is available.

            x = Fx
            P = Pp
        """
        self.mean.copy_(self.predicted_mean)
        self.covariance.copy_(self.predicted_covariance)

    def filter(self, measures, return_all=False) -> GaussianState:
        """Run the predict/update loop over a sequence of measures.

        The filter starts from its current estimate, and the model is kept fixed over time.
        If any component of a measure is NaN, the update is skipped for this timestep
        and the prediction becomes the new estimate (see `skip_update`).

        Args:
            measures (torch.Tensor): Sequence of measures over time.
                Shape: ``(T, dim_z, 1)`` or ``(T, dim_z)``, or ``(T,)`` when dim_z == 1
            return_all (bool): If True, return the posterior state at every timestep as a single
                `GaussianState` with a leading time dimension. Otherwise only the last one.
                Default: False

        Returns:
            GaussianState: Either the last posterior state, or all the posterior states.
                Shape (mean): ``([T, ]dim_x, 1)``
                Shape (covariance): ``([T, ]dim_x, dim_x)``
        """
        measures = torch.as_tensor(measures, dtype=self.dtype, device=self.device)
        if measures.ndim == 1 and self.measure_dim == 1:
            measures = measures[:, None, None]
        elif measures.ndim == 2:
            measures = measures[..., None]
        if measures.shape[1:] != (self.measure_dim, 1):
            raise DimensionError(
                f"measures should have shape (T, {self.measure_dim}, 1), got {tuple(measures.shape)}"
            )

        saver: GaussianState | None = None
        if return_all:
            saver = GaussianState(
                torch.empty((measures.shape[0], self.state_dim, 1), dtype=self.dtype, device=self.device),
                torch.empty((measures.shape[0], self.state_dim, self.state_dim), dtype=self.dtype, device=self.device),
            )

        for t, measure in enumerate(measures):
            self.predict()

            if torch.isnan(measure).any():
                self.skip_update()
            else:
                self.update(measure)

            if saver is not None:
                saver.mean[t] = self.mean
                saver.covariance[t] = self.covariance

        if saver is not None:
            return saver

        return self.state

    def _format_pair(
        self, title: str, first: tuple[str, torch.Tensor], second: tuple[str, torch.Tensor], linewidth: int
    ) -> str:
        """Format two named matrices side by side, or one above the other if too wide."""
        (first_name, first_matrix), (second_name, second_matrix) = first, second

        with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            first_repr = str(first_matrix).split("\n")
            second_repr = str(second_matrix).split("\n")

        max_char_first = max(len(line) for line in first_repr)
        max_char_second = max(len(line) for line in second_repr)

        header = [f"{title}: {first_name} = "]
        header += [" " * len(header[0])] * (len(first_repr) - 1)

        if max_char_first + max_char_second <= self._REPR_SPLIT_LENGTH:  # Single line
            first_repr = [line + " " * (max_char_first - len(line)) for line in first_repr]
            sep = [f"  &  {second_name} = "] + [" " * (len(second_name) + 8)] * (len(first_repr) - 1)
            return "\n".join(["".join(lines) for lines in zip(header, first_repr, sep, second_repr)])

        # Two lines
        second_header = " " * (len(title) + 2) + f"{second_name} = "
        header += ["", second_header] + [" " * len(second_header)] * (len(second_repr) - 1)
        return "\n".join(["".join(lines) for lines in zip(header, [*first_repr, "", *second_repr])])

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
        process = self._format_pair("Process", ("F", self.process_matrix), ("Q", self.process_noise), 80)
        measurement = self._format_pair(
            "Measurement", ("H", self.measurement_matrix), ("R", self.measurement_noise), 100
        )
        tuning = f"Tuning: alpha_sq = {self.alpha_sq}, sigma_sq = {self.sigma_sq}"

        n_char = max(len(line) for line in (process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement, tuning])
