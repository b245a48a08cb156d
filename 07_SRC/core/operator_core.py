# ==================================================
# =============  MODULE: operator_core =============
# ==================================================
from __future__ import annotations

from typing import Optional, Literal, Any, Dict

import numpy as np
import torch

from core.config import GlobalConfig
from core.errors import ShapeMismatchError

# Public API
__all__ = ["OperatorCore", "ArrayLike", "Framework"]

ArrayLike = np.ndarray | torch.Tensor
Framework = Literal["numpy", "torch"]

# ==================================================
# ================== OperatorCore ==================
# ==================================================
class OperatorCore:
    """
    Base class for the NCHW operators (smoother, orientation, Sobel).

    Notes
    -----
    - Dual input: NumPy arrays are converted to torch tensors with the configured
      dtype/device, tensors are kept as they are (dtype, device and autograd history).
    - Results are returned in `global_cfg.output_format` unless overridden.
    """

    # ====[ INITIALIZATION – OperatorCore ]====
    def __init__(self, global_cfg: GlobalConfig = GlobalConfig()) -> None:
        """
        Parameters
        ----------
        global_cfg : GlobalConfig
            Provides framework, output format, dtype and default device.
        """
        self.global_cfg: GlobalConfig = global_cfg

        # Inherited params exposed locally
        self.framework: str = self.global_cfg.framework.lower()
        self.output_format: str = self.global_cfg.output_format.lower()
        self.dtype: torch.dtype = self.global_cfg.dtype
        self.verbose: bool = bool(self.global_cfg.verbose)
        self.device: str = self.global_cfg.device

        if self.framework != "torch":
            raise ValueError(f"[{type(self).__name__}] Unsupported framework '{self.framework}'.")
        if self.output_format not in ("numpy", "torch"):
            raise ValueError(f"[{type(self).__name__}] Unsupported output format '{self.output_format}'.")

        if self.verbose:
            self.summary()

    # ====[ RESOLVE AXIS – First non-None ]====
    @staticmethod
    def resolve_axis(*args, default: Optional[Any] = None) -> Optional[Any]:
        """Return the first non-None value among `args`, else `default`."""
        return next((x for x in args if x is not None), default)

    # ====[ CONVERT ONCE – NumPy/Torch → Torch ]====
    def convert_once(self, image: ArrayLike) -> torch.Tensor:
        """
        Convert an input to a torch tensor.

        Parameters
        ----------
        image : np.ndarray or torch.Tensor
            Input array.

        Returns
        -------
        torch.Tensor
            Tensors are returned unchanged; NumPy arrays are copied into a tensor of
            the configured dtype on the configured device.

        Raises
        ------
        TypeError
            If the input is neither a NumPy array nor a torch tensor.
        """
        if isinstance(image, torch.Tensor):
            return image
        if isinstance(image, np.ndarray):
            return torch.as_tensor(np.ascontiguousarray(image), dtype=self.dtype, device=self.device)
        raise TypeError(f"[{type(self).__name__}] Expected np.ndarray or torch.Tensor, got {type(image)}.")

    # ====[ TO OUTPUT – Torch → requested format ]====
    def to_output(self, image: torch.Tensor, framework: Optional[str] = None) -> ArrayLike:
        """
        Convert a result tensor to the requested output format.

        Parameters
        ----------
        image : torch.Tensor
            Result of an operator.
        framework : {'numpy', 'torch'}, optional
            Target format. Defaults to `self.output_format`.
        """
        fw = self.resolve_axis(framework, self.output_format)
        if fw == "numpy":
            return image.detach().cpu().numpy()
        if fw == "torch":
            return image
        raise ValueError(f"[{type(self).__name__}] Unsupported output format '{fw}'.")

    # ====[ ENSURE FORMAT – NCHW contract ]====
    def ensure_format(self, image: ArrayLike, name: str = "input", channels: Optional[int] = None) -> torch.Tensor:
        """
        Convert an input and check that it is a 4-D (N, C, H, W) tensor.

        Parameters
        ----------
        image : ArrayLike
            Input array.
        name : str
            Name of the input in error messages.
        channels : int, optional
            Required channel count, if any.

        Raises
        ------
        ShapeMismatchError
            If the tensor is not 4-D or has the wrong channel count.
        """
        x = self.convert_once(image)
        if x.ndim != 4:
            raise ShapeMismatchError(
                f"[{type(self).__name__}] '{name}' must be (N, C, H, W), got shape {tuple(x.shape)}."
            )
        if channels is not None and x.shape[1] != channels:
            raise ShapeMismatchError(
                f"[{type(self).__name__}] '{name}' must have {channels} channels, got {x.shape[1]}."
            )
        return x

    # ====[ SUMMARY ]====
    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print the operator configuration, built on `GlobalConfig.summary`."""
        info = {"operator": type(self).__name__, **self.global_cfg.summary(printout=False)}
        if printout:
            print(f"====[ {type(self).__name__} Summary ]====")
            for key, val in info.items():
                print(f"{key:<15}: {val}")
        return info
