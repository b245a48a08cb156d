# ==================================================
# ==============  MODULE: gaussian  ================
# ==================================================
from __future__ import annotations

from typing import Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np
import torch
import torch.nn.functional as F

from core.config import GaussianConfig, GlobalConfig
from core.errors import ConfigurationError, ShapeMismatchError
from core.operator_core import ArrayLike, OperatorCore

# Public API
__all__ = ["GaussianKernelGenerator", "WindowedGaussianSmoother", "gaussian_smooth"]

# ==================================================
# ========== GaussianKernelGenerator ===============
# ==================================================
class GaussianKernelGenerator(OperatorCore):
    """
    Generate the 2D Gaussian weight table of a sliding-window footprint.

    The table is centred on the footprint centre `((kh - 1) / 2, (kw - 1) / 2)`,
    so it is flip-symmetric for odd and even footprints alike, and it is
    L1-normalized when `gaussian_cfg.normalize=True`.

    Notes
    -----
    - Values are computed in float64 and cast to `global_cfg.dtype`.
    - Default sigma is `(kh + kw) / 12`, i.e. the footprint spans about 3 sigma
      on each side of the centre.
    """

    def __init__(
        self,
        gaussian_cfg: GaussianConfig = GaussianConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        """
        Parameters
        ----------
        gaussian_cfg : GaussianConfig
            Footprint, sigma and normalization of the table.
        global_cfg : GlobalConfig
            Output format, dtype and device.
        """
        self.gaussian_cfg: GaussianConfig = gaussian_cfg
        super().__init__(global_cfg=global_cfg)

    def generate(self, visualize: bool = False, output_format: Optional[str] = None) -> ArrayLike:
        """
        Generate the Gaussian table.

        Parameters
        ----------
        visualize : bool, default False
            If True, display the table with matplotlib.
        output_format : {'numpy', 'torch'}, optional
            Overrides `global_cfg.output_format`.

        Returns
        -------
        torch.Tensor or np.ndarray
            Table of shape (kernel_h, kernel_w).

        Raises
        ------
        ConfigurationError
            If a footprint dimension or sigma is not strictly positive.
        """
        kh, kw = self.gaussian_cfg.kernel
        if kh <= 0 or kw <= 0:
            raise ConfigurationError(f"[GaussianKernelGenerator] Kernel size must be positive (got {(kh, kw)}).")
        sigma = self.gaussian_cfg.resolved_sigma()
        if sigma <= 0:
            raise ConfigurationError(f"[GaussianKernelGenerator] Sigma must be strictly positive (got {sigma}).")

        with torch.no_grad():
            dh = torch.arange(kh, dtype=torch.float64) - (kh - 1) / 2.0
            dw = torch.arange(kw, dtype=torch.float64) - (kw - 1) / 2.0
            Y, X = torch.meshgrid(dh, dw, indexing="ij")
            exponent = torch.clamp(-(X ** 2 + Y ** 2) / (2 * sigma ** 2), min=-50)
            kernel = torch.exp(exponent) / (2 * np.pi * sigma ** 2)

            if self.gaussian_cfg.normalize:
                kernel = kernel / kernel.sum()

        kernel = kernel.to(dtype=self.dtype, device=self.device)

        if visualize:
            self._visualize(kernel)

        return self.to_output(kernel, framework=output_format)

    def _visualize(self, kernel: torch.Tensor) -> None:
        """Display the 2D table as a heatmap (debugging aid)."""
        table = kernel.detach().cpu().numpy()
        plt.imshow(table, cmap="viridis")
        plt.colorbar()
        plt.title(f"2D Gaussian Kernel ({table.shape[0]}x{table.shape[1]})")
        plt.axis("off")
        plt.tight_layout()
        plt.show()


# ==================================================
# ========== WindowedGaussianSmoother ==============
# ==================================================
class WindowedGaussianSmoother(OperatorCore):
    """
    Strided, zero-padded Gaussian window reduction over (N, C, H, W) tensors.

    Every channel is smoothed independently (depthwise correlation), so the
    output keeps N and C and has spatial size
    `H' = (H + 2 * pad_h - kernel_h) // stride_h + 1` (and likewise for W).
    Taps falling outside the input contribute nothing.

    The operation is linear; `smooth_backward` is its adjoint and is what the
    SSIM backward pass uses to bring window gradients back to pixels.
    """

    def __init__(
        self,
        gaussian_cfg: GaussianConfig = GaussianConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        self.gaussian_cfg: GaussianConfig = gaussian_cfg
        super().__init__(global_cfg=global_cfg)

        self.kernel: Tuple[int, int] = gaussian_cfg.kernel
        self.stride: Tuple[int, int] = gaussian_cfg.stride
        self.pad: Tuple[int, int] = gaussian_cfg.pad
        if any(s <= 0 for s in self.stride) or any(p < 0 for p in self.pad):
            raise ConfigurationError(
                f"[WindowedGaussianSmoother] Invalid stride {self.stride} or pad {self.pad}."
            )

        # Table is constant after construction; kept in float64 and cast per call.
        self.table: torch.Tensor = GaussianKernelGenerator(
            gaussian_cfg,
            GlobalConfig(dtype=torch.float64, output_format="torch"),
        ).generate()

    # --------------- Public API ---------------

    def __call__(self, image: ArrayLike) -> ArrayLike:
        """
        Smooth an (N, C, H, W) array or tensor and return it in the output format.
        """
        x = self.ensure_format(image, name="image")
        return self.to_output(self.smooth(x))

    def output_size(self, height: int, width: int) -> Tuple[int, int]:
        """Spatial size of the smoothed output for an input of size (height, width)."""
        out_h = (height + 2 * self.pad[0] - self.kernel[0]) // self.stride[0] + 1
        out_w = (width + 2 * self.pad[1] - self.kernel[1]) // self.stride[1] + 1
        return out_h, out_w

    def smooth(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply the window reduction to a tensor (autograd-transparent).

        Raises
        ------
        ShapeMismatchError
            If `x` is not 4-D or the window does not fit in the padded input.
        """
        if x.ndim != 4:
            raise ShapeMismatchError(
                f"[WindowedGaussianSmoother] Expected (N, C, H, W), got shape {tuple(x.shape)}."
            )
        out_h, out_w = self.output_size(x.shape[2], x.shape[3])
        if out_h <= 0 or out_w <= 0:
            raise ShapeMismatchError(
                f"[WindowedGaussianSmoother] Window {self.kernel} does not fit input "
                f"{tuple(x.shape[2:])} with pad {self.pad}."
            )
        return F.conv2d(x, self._weight(x), stride=self.stride, padding=self.pad, groups=x.shape[1])

    def smooth_backward(self, grad_output: torch.Tensor, input_shape: torch.Size) -> torch.Tensor:
        """
        Adjoint of `smooth`: scatter window gradients back onto the input grid.

        Parameters
        ----------
        grad_output : torch.Tensor
            Gradient w.r.t. the smoothed tensor, shape (N, C, H', W').
        input_shape : torch.Size
            Shape (N, C, H, W) of the tensor that was smoothed.
        """
        return torch.nn.grad.conv2d_input(
            tuple(input_shape),
            self._weight(grad_output),
            grad_output,
            stride=self.stride,
            padding=self.pad,
            groups=grad_output.shape[1],
        )

    # ====[ Private methods ]====
    def _weight(self, x: torch.Tensor) -> torch.Tensor:
        channels = x.shape[1]
        table = self.table.to(dtype=x.dtype, device=x.device)
        return table.expand(channels, 1, *self.kernel).contiguous()


# ======================================================================
#                      Convenience wrapper
# ======================================================================

def gaussian_smooth(
    img: ArrayLike,
    kernel_size: int,
    stride: int = 1,
    pad: int = 0,
    sigma: Optional[float] = None,
    output_format: str = "torch",
) -> ArrayLike:
    """
    Smooth an (N, C, H, W) image with a square Gaussian window.

    Parameters
    ----------
    img : np.ndarray or torch.Tensor
        Input batch.
    kernel_size : int
        Square window footprint.
    stride : int, default 1
        Window stride.
    pad : int, default 0
        Implicit zero padding.
    sigma : float, optional
        Standard deviation; `kernel_size / 6` if None.
    output_format : {'numpy', 'torch'}, default 'torch'
        Format of the result.
    """
    gaussian_cfg = GaussianConfig(
        kernel_h=kernel_size,
        kernel_w=kernel_size,
        stride_h=stride,
        stride_w=stride,
        pad_h=pad,
        pad_w=pad,
        sigma=sigma,
    )
    smoother = WindowedGaussianSmoother(gaussian_cfg, GlobalConfig(output_format=output_format))
    return smoother(img)
