# ==================================================
# ===============  MODULE: metrics  ================
# ==================================================
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from core.config import GlobalConfig, SSIMConfig
from core.errors import ShapeMismatchError
from core.operator_core import ArrayLike
from operators.gaussian import WindowedGaussianSmoother

ArrayNP = np.ndarray

__all__ = [
    "SSIMComponents",
    "ssim_components",
    "ssim_map",
    "MSE",
    "PSNR",
    "SSIM",
    "MetricEvaluator",
]

# ----------------------------- #
# ------- Basic utilities ----- #
# ----------------------------- #

def _as_numpy(x: ArrayLike) -> ArrayNP:
    """Convert the input to a NumPy array, preserving values and shape."""
    return x if isinstance(x, np.ndarray) else x.detach().cpu().numpy()


def _check_same_shape(owner: str, a: ArrayLike, b: ArrayLike) -> None:
    if tuple(a.shape) != tuple(b.shape):
        raise ShapeMismatchError(
            f"[{owner}] Inputs must have the same shape, got {tuple(a.shape)} and {tuple(b.shape)}."
        )


# -------------------------------- #
# ---- SSIM local statistics ----- #
# -------------------------------- #

@dataclass
class SSIMComponents:
    """
    Windowed statistics of an SSIM evaluation and the factors built from them.

    Attributes
    ----------
    mu_a, mu_b : torch.Tensor
        Local means.
    var_a, var_b, cov_ab : torch.Tensor
        Local variances and covariance.
    lum_num, lum_den : torch.Tensor
        `2 mu_a mu_b + c1` and `mu_a^2 + mu_b^2 + c1`.
    cs_num, cs_den : torch.Tensor
        `2 cov_ab + c2` and `var_a + var_b + c2`.
    """
    mu_a: torch.Tensor
    mu_b: torch.Tensor
    var_a: torch.Tensor
    var_b: torch.Tensor
    cov_ab: torch.Tensor
    lum_num: torch.Tensor
    lum_den: torch.Tensor
    cs_num: torch.Tensor
    cs_den: torch.Tensor

    @property
    def luminance(self) -> torch.Tensor:
        return self.lum_num / self.lum_den

    @property
    def contrast_structure(self) -> torch.Tensor:
        return self.cs_num / self.cs_den

    @property
    def map(self) -> torch.Tensor:
        """Per-window SSIM index, luminance times contrast-structure."""
        return self.luminance * self.contrast_structure


def ssim_components(
    a: torch.Tensor,
    b: torch.Tensor,
    smoother: WindowedGaussianSmoother,
    c1: float,
    c2: float,
) -> SSIMComponents:
    """
    Compute the windowed SSIM statistics of two same-shaped (N, C, H, W) tensors.

    Every statistic is a Gaussian window average of a pixel-wise product, so
    the whole computation is differentiable by autograd as well as by the
    hand-written backward of `SSIMLossFunction`.
    """
    _check_same_shape("ssim_components", a, b)
    mu_a = smoother.smooth(a)
    mu_b = smoother.smooth(b)
    var_a = smoother.smooth(a * a) - mu_a * mu_a
    var_b = smoother.smooth(b * b) - mu_b * mu_b
    cov_ab = smoother.smooth(a * b) - mu_a * mu_b

    return SSIMComponents(
        mu_a=mu_a,
        mu_b=mu_b,
        var_a=var_a,
        var_b=var_b,
        cov_ab=cov_ab,
        lum_num=2.0 * mu_a * mu_b + c1,
        lum_den=mu_a * mu_a + mu_b * mu_b + c1,
        cs_num=2.0 * cov_ab + c2,
        cs_den=var_a + var_b + c2,
    )


def ssim_map(
    a: torch.Tensor,
    b: torch.Tensor,
    smoother: WindowedGaussianSmoother,
    c1: float,
    c2: float,
) -> torch.Tensor:
    """Per-window SSIM index, shape (N, C, H', W')."""
    return ssim_components(a, b, smoother, c1, c2).map


# ------------------------------------ #
# -------- Scalar image metrics ------ #
# ------------------------------------ #

# ====[MSE and PSNR]====

def MSE(u_truth: ArrayLike, u_estim: ArrayLike, clip_val: float = 1e5) -> float:
    """
    Compute the Mean Squared Error (MSE) between two arrays, with optional clipping.

    Parameters
    ----------
    u_truth : ArrayLike
        Ground truth array (reference values).
    u_estim : ArrayLike
        Estimated or predicted array.
    clip_val : float, optional
        Maximum absolute difference before squaring. Default is 1e5.

    Returns
    -------
    float
    """
    _check_same_shape("MSE", u_truth, u_estim)
    if isinstance(u_truth, torch.Tensor) and isinstance(u_estim, torch.Tensor):
        with torch.no_grad():
            diff = torch.clamp(u_truth - u_estim, min=-clip_val, max=clip_val)
            return float(torch.mean(diff ** 2).item())
    diff_np = np.clip(_as_numpy(u_truth) - _as_numpy(u_estim), -clip_val, clip_val)
    return float(np.mean(diff_np ** 2))


def PSNR(
    u_truth: ArrayLike,
    u_estim: ArrayLike,
    max_intensity: float = 1.0,
    clip_val: float = 1e5
) -> float:
    """
    Compute the Peak Signal-to-Noise Ratio (PSNR) in decibels (dB) between two arrays.

    If the MSE is zero, PSNR returns +inf (perfect reconstruction).
    """
    mse_val = MSE(u_truth, u_estim, clip_val=clip_val)
    if mse_val == 0.0:
        return float("inf")
    return float(20.0 * np.log10(max_intensity) - 10.0 * np.log10(mse_val))


# -------------------------- #
# ---------- SSIM ---------- #
# -------------------------- #

# --- Structural Similarity Index (SSIM) ---
def SSIM(
    u_truth: ArrayLike,
    u_estim: ArrayLike,
    return_map: bool = False,
    ssim_cfg: Optional[SSIMConfig] = None,
    output_format: str = "numpy",
) -> Union[float, ArrayLike]:
    """
    Compute the Structural Similarity Index (SSIM) between two (N, C, H, W) arrays.

    The local statistics use the same strided, zero-padded Gaussian window as
    the SSIM training loss, so `1 - SSIM(a, b)` equals `SSIMLoss()(a, b)` for
    the same configuration.

    Parameters
    ----------
    u_truth : ArrayLike
        Ground truth batch.
    u_estim : ArrayLike
        Estimated or predicted batch.
    return_map : bool, optional
        If True, return the per-window SSIM map instead of its mean.
    ssim_cfg : SSIMConfig, optional
        Window geometry and stabilizers. Defaults to `SSIMConfig()`.
    output_format : {"numpy", "torch"}, optional
        Format of the map when `return_map=True`. Default is "numpy".

    Returns
    -------
    float or ArrayLike
        Mean SSIM over windows, channels and batch, or the full map.
    """
    cfg = ssim_cfg if ssim_cfg is not None else SSIMConfig()
    cfg.resolve()
    smoother = WindowedGaussianSmoother(cfg.gaussian_cfg(), GlobalConfig(output_format=output_format))

    a = smoother.ensure_format(u_truth, name="u_truth")
    b = smoother.ensure_format(u_estim, name="u_estim")
    with torch.no_grad():
        values = ssim_map(a, b, smoother, cfg.c1, cfg.c2)

    if return_map:
        return smoother.to_output(values)
    return float(values.mean().item())


# ==================================================
# ============ Metric Evaluator Class ==============
# ==================================================

class MetricEvaluator:
    """
    Centralized metric evaluator to compute multiple image metrics
    in one pass, with individual parameter handling.
    """

    def __init__(self, metrics: Optional[Sequence[str]] = None, return_dict: bool = True):
        """
        Parameters
        ----------
        metrics : list of str or None
            Metrics to compute (among 'mse', 'psnr', 'ssim').
            If None, compute all available metrics.
        return_dict : bool
            If True, return an ordered dictionary of results.
        """
        self.available_metrics: Dict[str, Tuple[Callable[..., Any], Dict[str, Any]]] = {
            "mse": (MSE, {}),
            "psnr": (PSNR, {}),
            "ssim": (SSIM, {"return_map": False}),
        }
        self.metrics: Sequence[str] = list(self.available_metrics.keys()) if metrics is None else metrics
        unknown = [m for m in self.metrics if m not in self.available_metrics]
        if unknown:
            raise ValueError(f"[MetricEvaluator] Unknown metrics {unknown}. Expected {list(self.available_metrics)}.")
        self.return_dict: bool = return_dict

    def __call__(self, u_truth: ArrayLike, u_estim: ArrayLike, **global_kwargs):
        """
        Compute selected metrics between two batches.

        Returns
        -------
        dict or list
            Dictionary (or list) of metric results.
        """
        results: "OrderedDict[str, Any]" = OrderedDict()
        for name in self.metrics:
            func, specific_kwargs = self.available_metrics[name]
            results[name] = func(u_truth, u_estim, **{**specific_kwargs, **global_kwargs})
        return results if self.return_dict else list(results.values())
