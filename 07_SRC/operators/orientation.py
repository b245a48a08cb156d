# ==================================================
# =============  MODULE: orientation  ==============
# ==================================================
from __future__ import annotations

from dataclasses import dataclass

import torch

from core.config import GaussianConfig, GlobalConfig
from core.operator_core import ArrayLike, OperatorCore
from operators.gaussian import WindowedGaussianSmoother

# Public API
__all__ = ["OrientationResult", "OrientationEstimator"]


@dataclass
class OrientationResult:
    """
    Per-location orientation of a smoothed gradient map.

    Attributes
    ----------
    smoothed : torch.Tensor
        Smoothed (Gx, Gy), shape (N, 2, H', W').
    angle : torch.Tensor
        `atan2(Gy, Gx)` in (-pi, pi], shape (N, 1, H', W').
    sin_cos : torch.Tensor
        `sin(angle)` and `cos(angle)` stacked in that order, shape (N, 2, H', W').
    """
    smoothed: torch.Tensor
    angle: torch.Tensor
    sin_cos: torch.Tensor


# ==================================================
# ============== OrientationEstimator ==============
# ==================================================
class OrientationEstimator(OperatorCore):
    """
    Estimate the dominant gradient orientation at every output location.

    The two gradient channels are smoothed with the same window geometry as the
    convolution they steer, so the orientation map lands on the convolution
    output grid. Where both smoothed components are zero the angle is 0
    (`atan2(0, 0)`), which selects the unrotated kernel.
    """

    def __init__(
        self,
        gaussian_cfg: GaussianConfig = GaussianConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__(global_cfg=global_cfg)
        self.smoother: WindowedGaussianSmoother = WindowedGaussianSmoother(gaussian_cfg, global_cfg)

    def __call__(self, gradient_map: ArrayLike) -> OrientationResult:
        """Estimate orientations from an (N, 2, H, W) array or tensor."""
        return self.estimate(self.ensure_format(gradient_map, name="gradient_map", channels=2))

    @torch.no_grad()
    def estimate(self, gradient_map: torch.Tensor) -> OrientationResult:
        """
        Parameters
        ----------
        gradient_map : torch.Tensor
            (N, 2, H, W) tensor; channel 0 is Gx, channel 1 is Gy.

        Returns
        -------
        OrientationResult
        """
        smoothed = self.smoother.smooth(gradient_map)
        angle = torch.atan2(smoothed[:, 1:2], smoothed[:, 0:1])
        sin_cos = torch.cat([torch.sin(angle), torch.cos(angle)], dim=1)
        return OrientationResult(smoothed=smoothed, angle=angle, sin_cos=sin_cos)
