# ==================================================
# ============  MODULE: diff_operator  =============
# ==================================================
from __future__ import annotations

from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F
from scipy.ndimage import correlate

from core.config import GlobalConfig
from core.operator_core import ArrayLike, OperatorCore

# Public API
__all__ = ["DiffOperator", "sobel_gradient_map"]

# Correlation taps (no flip): x grows to the right (width), y grows downward (height).
_SOBEL_X = np.array([[-1.0, 0.0, 1.0],
                     [-2.0, 0.0, 2.0],
                     [-1.0, 0.0, 1.0]]) / 8.0
_SOBEL_Y = _SOBEL_X.T.copy()


# ==================================================
# ================== DiffOperator ==================
# ==================================================
class DiffOperator(OperatorCore):
    """
    Sobel differential operator producing the (Gx, Gy) gradient map consumed by
    the gradient-oriented convolution.

    Notes
    -----
    - Multi-channel images are averaged over channels before differentiation.
    - Zero padding of one pixel keeps H and W unchanged.
    - Torch path: `F.conv2d`. NumPy path (`use_numpy=True`): `scipy.ndimage.correlate`.
    """

    def __init__(self, global_cfg: GlobalConfig = GlobalConfig(), use_numpy: bool = False) -> None:
        """
        Parameters
        ----------
        global_cfg : GlobalConfig
            Output format, dtype and device.
        use_numpy : bool, default False
            Compute with SciPy on CPU instead of torch (no autograd).
        """
        super().__init__(global_cfg=global_cfg)
        self.use_numpy: bool = use_numpy

    def sobel_gradient(self, image: ArrayLike, output_format: Optional[str] = None) -> ArrayLike:
        """
        Compute the Sobel gradient map of an image batch.

        Parameters
        ----------
        image : np.ndarray or torch.Tensor
            Batch of shape (N, C, H, W).
        output_format : {'numpy', 'torch'}, optional
            Overrides `global_cfg.output_format`.

        Returns
        -------
        np.ndarray or torch.Tensor
            Gradient map of shape (N, 2, H, W); channel 0 is Gx, channel 1 is Gy.
        """
        u = self.ensure_format(image, name="image")
        u = u.mean(dim=1, keepdim=True)

        if self.use_numpy:
            grad = self._sobel_numpy(u.detach().cpu().numpy())
            grad = torch.as_tensor(grad, dtype=u.dtype, device=u.device)
        else:
            grad = self._sobel_torch(u)

        return self.to_output(grad, framework=output_format)

    # ====[ Private methods ]====
    def _sobel_torch(self, u: torch.Tensor) -> torch.Tensor:
        kernels = torch.as_tensor(np.stack([_SOBEL_X, _SOBEL_Y]), dtype=u.dtype, device=u.device)
        return F.conv2d(u, kernels.unsqueeze(1), padding=1)

    @staticmethod
    def _sobel_numpy(u: np.ndarray) -> np.ndarray:
        n, _, h, w = u.shape
        out = np.empty((n, 2, h, w), dtype=u.dtype)
        for i in range(n):
            out[i, 0] = correlate(u[i, 0], _SOBEL_X, mode="constant", cval=0.0)
            out[i, 1] = correlate(u[i, 0], _SOBEL_Y, mode="constant", cval=0.0)
        return out


def sobel_gradient_map(image: ArrayLike, output_format: str = "torch", use_numpy: bool = False) -> ArrayLike:
    """Shortcut for `DiffOperator(...).sobel_gradient(image)`."""
    return DiffOperator(GlobalConfig(output_format=output_format), use_numpy=use_numpy).sobel_gradient(image)
