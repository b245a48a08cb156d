# ==================================================
# ===============  MODULE: ssim_loss  ==============
# ==================================================
"""
Windowed structural-similarity loss with a hand-written backward pass.

loss = 1 - mean(SSIM map), the mean running over windows, channels and batch.
"""
from __future__ import annotations

from typing import Tuple

import torch
from torch import nn

from core.config import ConvGeometry, GlobalConfig, SSIMConfig
from core.errors import ShapeMismatchError
from operators.gaussian import WindowedGaussianSmoother
from operators.metrics import ssim_components
from utils.decorators import log_exceptions
from utils.logger import get_debug_logger, get_logger

# Public API
__all__ = ["SSIMLossFunction", "SSIMLoss"]


# ==================================================
# ===============  SSIMLossFunction  ===============
# ==================================================
class SSIMLossFunction(torch.autograd.Function):
    """
    `1 - mean(SSIM(a, b))` with an analytical gradient for both inputs.

    The map is `l * cs` with `l = A1 / B1` and `cs = A2 / B2`, where
    A1 = 2 mu_a mu_b + c1, B1 = mu_a^2 + mu_b^2 + c1,
    A2 = 2 cov_ab + c2, B2 = var_a + var_b + c2.
    Gradients are taken w.r.t. the five window averages (mu_a, mu_b, E[a^2],
    E[b^2], E[ab]) and pulled back to pixels through the smoother's adjoint.
    """

    @staticmethod
    def forward(ctx, a, b, smoother, c1, c2):
        stats = ssim_components(a, b, smoother, c1, c2)
        ctx.smoother = smoother
        ctx.save_for_backward(
            a, b, stats.mu_a, stats.mu_b, stats.lum_num, stats.lum_den, stats.cs_num, stats.cs_den
        )
        return 1.0 - stats.map.mean()

    @staticmethod
    def backward(ctx, grad_loss):
        a, b, mu_a, mu_b, lum_num, lum_den, cs_num, cs_den = ctx.saved_tensors
        smoother: WindowedGaussianSmoother = ctx.smoother

        # d loss / d map, identical for every window
        g = -grad_loss / lum_num.numel()

        lum = lum_num / lum_den
        cs = cs_num / cs_den
        lum_den2 = lum_den * lum_den
        cs_den2 = cs_den * cs_den

        # E[a^2] and E[b^2] enter only through cs_den; E[ab] only through cs_num.
        d_sq = g * (-lum * cs_num / cs_den2)
        d_cross = g * (2.0 * lum / cs_den)

        def back(t: torch.Tensor) -> torch.Tensor:
            return smoother.smooth_backward(t, a.shape)

        back_sq = back(d_sq)
        back_cross = back(d_cross)

        grad_a = grad_b = None
        if ctx.needs_input_grad[0]:
            d_lum = (2.0 * mu_b * lum_den - lum_num * 2.0 * mu_a) / lum_den2
            d_cs = (-2.0 * mu_b * cs_den + 2.0 * mu_a * cs_num) / cs_den2
            d_mu = g * (d_lum * cs + lum * d_cs)
            grad_a = back(d_mu) + 2.0 * a * back_sq + b * back_cross
        if ctx.needs_input_grad[1]:
            d_lum = (2.0 * mu_a * lum_den - lum_num * 2.0 * mu_b) / lum_den2
            d_cs = (-2.0 * mu_a * cs_den + 2.0 * mu_b * cs_num) / cs_den2
            d_mu = g * (d_lum * cs + lum * d_cs)
            grad_b = back(d_mu) + 2.0 * b * back_sq + a * back_cross

        return grad_a, grad_b, None, None, None


# ==================================================
# ===================  SSIMLoss  ===================
# ==================================================
class SSIMLoss(nn.Module):
    """
    Structural-similarity comparator used as a training loss.

    Parameters
    ----------
    config : SSIMConfig
        Window footprint, stride, padding and the c1/c2 stabilizers.
    global_cfg : GlobalConfig
        Only `output_format` and `dtype` of the internal smoother are derived from it.
    """

    def __init__(self, config: SSIMConfig = SSIMConfig(), global_cfg: GlobalConfig = GlobalConfig()) -> None:
        super().__init__()
        self.config: SSIMConfig = config
        self.global_cfg: GlobalConfig = global_cfg
        self.setup()

    @log_exceptions(raise_exception=True)
    def setup(self) -> None:
        self.geometry: ConvGeometry = self.config.resolve()
        self.smoother = WindowedGaussianSmoother(self.config.gaussian_cfg(), self.global_cfg)
        get_logger().info(
            f"Setting up SSIMLoss: window {self.geometry.kernel}, stride {self.geometry.stride}, "
            f"pad {self.geometry.pad}, c1 {self.config.c1}, c2 {self.config.c2}"
        )

    @log_exceptions(raise_exception=True)
    def reshape(self, a: torch.Tensor, b: torch.Tensor) -> Tuple[int, int]:
        """
        Check both inputs and return the spatial size of the SSIM map.

        Raises
        ------
        ShapeMismatchError
            If the inputs differ in shape, are not 4-D, or are smaller than the window.
        """
        if a.shape != b.shape:
            raise ShapeMismatchError(
                f"[SSIMLoss] Inputs must have the same shape, got {tuple(a.shape)} and {tuple(b.shape)}."
            )
        if a.ndim != 4:
            raise ShapeMismatchError(f"[SSIMLoss] Inputs must be (N, C, H, W), got {tuple(a.shape)}.")
        out_h, out_w = self.geometry.output_size(a.shape[2], a.shape[3])
        if out_h <= 0 or out_w <= 0:
            raise ShapeMismatchError(
                f"[SSIMLoss] Window {self.geometry.kernel} does not fit input {tuple(a.shape[2:])}."
            )
        get_debug_logger().debug(f"SSIMLoss reshape: input {tuple(a.shape)} -> map {(out_h, out_w)}")
        return out_h, out_w

    def forward(self, a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
        self.reshape(a, b)
        return SSIMLossFunction.apply(a, b, self.smoother, self.config.c1, self.config.c2)

    def extra_repr(self) -> str:
        return f"window={self.geometry.kernel}, stride={self.geometry.stride}, pad={self.geometry.pad}"
