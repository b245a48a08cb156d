# ==================================================
# ==============  MODULE: rotation  ================
# ==================================================
from __future__ import annotations

import torch

from core.errors import ConfigurationError

# Public API
__all__ = ["NUM_ROTATIONS", "rotate_kernel", "build_kernel_bank", "fold_bank_gradient"]

# The sector interpolation is hard-wired to the four axis-aligned rotations.
NUM_ROTATIONS: int = 4


def _check_square(weight: torch.Tensor) -> None:
    if weight.ndim < 2 or weight.shape[-1] != weight.shape[-2]:
        raise ConfigurationError(
            f"[rotation] Kernels must be square in their last two dims, got shape {tuple(weight.shape)}."
        )


def rotate_kernel(weight: torch.Tensor, rotation: int) -> torch.Tensor:
    """
    Rotate every (kH, kW) plane of `weight` by `rotation * 90` degrees counter-clockwise.

    This is a pure index permutation: `rot[h, w] = weight[w, k - 1 - h]` for one
    quarter turn, applied `rotation` times. Negative rotations turn clockwise,
    so `rotate_kernel(rotate_kernel(w, r), -r)` is `w`.
    """
    _check_square(weight)
    return torch.rot90(weight, k=rotation, dims=(-2, -1))


def build_kernel_bank(weight: torch.Tensor) -> torch.Tensor:
    """
    Build the rotation bank of a learned kernel.

    Parameters
    ----------
    weight : torch.Tensor
        Kernel of shape (out, in / group, k, k).

    Returns
    -------
    torch.Tensor
        Bank of shape (4, out, in / group, k, k); entry r is the kernel turned by r * 90 degrees.
        Entry 0 equals `weight`; each entry holds the same values in another order.
    """
    return torch.stack([rotate_kernel(weight, r) for r in range(NUM_ROTATIONS)], dim=0)


def fold_bank_gradient(bank_grad: torch.Tensor) -> torch.Tensor:
    """
    Reduce per-rotation kernel gradients to the gradient of the single learned kernel.

    Every bank entry is a permutation of the same parameter, so its gradient is
    mapped back through the inverse permutation and the four results are summed.

    Parameters
    ----------
    bank_grad : torch.Tensor
        Gradients of shape (4, out, in / group, k, k).
    """
    if bank_grad.shape[0] != NUM_ROTATIONS:
        raise ConfigurationError(
            f"[rotation] Expected {NUM_ROTATIONS} bank gradients, got {bank_grad.shape[0]}."
        )
    return sum(rotate_kernel(bank_grad[r], -r) for r in range(NUM_ROTATIONS))
