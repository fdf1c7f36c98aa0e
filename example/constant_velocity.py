"""Example filtering a noisy 1D trajectory with a constant velocity Kalman filter"""

import argparse
import logging
from typing import Tuple

import torch

from stateful_kf import KalmanFilterError
from stateful_kf.motion import NoiseModel, constant_velocity_filter

logger = logging.getLogger(__name__)


def generate_data(n: int, dt: float, noise: float, trajectory: str) -> Tuple[torch.Tensor, torch.Tensor]:
    """Generate a noisy trajectory:

    x(t) = t                  (line)
    x(t) = t (T - t)          (parabola)
    z(t) = x(t) + noise * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        dt (float): Time step between two points
        noise (float): Gaussian noise standard deviation
        trajectory (str): "line" or "parabola"

    Returns:
        torch.Tensor: x(t) true positions
            Shape: (T,)
        torch.Tensor: z(t) measured positions
            Shape: (T,)
    """
    t = torch.arange(n, dtype=torch.float64) * dt
    if trajectory == "parabola":
        x = t * (n * dt - t)
    else:
        x = t.clone()
    return x, x + noise * torch.randn_like(x)


def main(model: str, trajectory: str, n: int, dt: float, noise: float, alpha_sq: float, sigma_sq: float):
    kf = constant_velocity_filter(dt, noise**2, noise_model=model, noise_dt=10 * dt, sigma_sq=sigma_sq)
    kf.alpha_sq = alpha_sq
    kf.covariance = torch.diag(torch.tensor([1.0, 100.0]))

    print(kf)
    print()

    x, z = generate_data(n, dt, noise, trajectory)

    for t, measure in enumerate(z):
        print(
            f"Filtered State: {kf.mean[0, 0]:f} +/- {kf.covariance[0, 0].sqrt():f}, "
            f"{kf.mean[1, 0]:f} +/- {kf.covariance[1, 1].sqrt():f}"
        )

        kf.predict()
        print(
            f"Predicted State: {kf.predicted_mean[0, 0]:f} +/- {kf.predicted_covariance[0, 0].sqrt():f}, "
            f"{kf.predicted_mean[1, 0]:f} +/- {kf.predicted_covariance[1, 1].sqrt():f}"
        )
        print(f"Measurement: {measure:f} (True position: {x[t]:f})")

        try:
            log_likelihood = kf.evaluate(measure[None])
            kf.update()
        except KalmanFilterError as error:
            logger.warning("Step %d skipped: %s", t, error)
            kf.skip_update()
            continue

        logger.debug("Step %d: log-likelihood=%f", t, log_likelihood)

    print(f"Final MSE of the filtered position: {(kf.mean[0, 0] - x[-1]) ** 2:e}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Kalman filter example, filtering a noisy 1D trajectory")
    parser.add_argument(
        "--model",
        default=NoiseModel.PIECEWISE.value,
        choices=[model.value for model in NoiseModel],
        help="Process noise model",
    )
    parser.add_argument("--trajectory", default="line", choices=["line", "parabola"], help="True trajectory")
    parser.add_argument("--n", default=50, type=int, help="Number of points")
    parser.add_argument("--dt", default=0.01, type=float, help="Time step")
    parser.add_argument("--noise", default=0.03, type=float, help="Observation noise")
    parser.add_argument("--alpha-sq", default=1.0, type=float, help="Fading memory factor (>= 1.0)")
    parser.add_argument("--sigma-sq", default=0.001, type=float, help="Process noise scale")
    parser.add_argument("--verbose", action="store_true", help="Log the likelihood of each measure")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    main(args.model, args.trajectory, args.n, args.dt, args.noise, args.alpha_sq, args.sigma_sq)
