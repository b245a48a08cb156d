# ==================================================
# ============  MODULE: interpolation  =============
# ==================================================
from __future__ import annotations

import math

import torch

from operators.rotation import NUM_ROTATIONS

# Public API
__all__ = ["SECTOR_PAIRS", "angular_interpolation_weights"]

# Sector s covers [-180 + 90 s, -90 + 90 s) degrees and blends bank entries
# (lower, upper). The last sector is closed on both ends so 180 is covered.
SECTOR_PAIRS = ((2, 3), (3, 0), (0, 1), (1, 2))
_SECTOR_DEG = 360.0 / NUM_ROTATIONS


@torch.no_grad()
def angular_interpolation_weights(angle: torch.Tensor) -> torch.Tensor:
    """
    Map orientation angles to convex weights over the four rotation-bank entries.

    Parameters
    ----------
    angle : torch.Tensor
        Angles in radians, shape (N, 1, H, W), in (-pi, pi].

    Returns
    -------
    torch.Tensor
        Weights of shape (N, 4, H, W). At each location the lower entry of the
        active sector gets `1 - t` and the upper entry gets `t`, where `t` in
        [0, 1] is the position of the angle inside its 90 degree sector. The two
        other entries are exactly 0. The weights sum to 1.

    Notes
    -----
    Sector seams are continuous: at `t = 1` the upper entry holds weight 1,
    which is the lower entry of the next sector at `t = 0`.
    """
    degrees = angle * (180.0 / math.pi)
    position = (degrees + 180.0) / _SECTOR_DEG

    sector = torch.clamp(torch.floor(position), 0, NUM_ROTATIONS - 1)
    t = torch.clamp(position - sector, 0.0, 1.0)

    sector = sector.long()
    lower_of = torch.tensor([p[0] for p in SECTOR_PAIRS], device=angle.device)
    lower = lower_of[sector]
    upper = (lower + 1) % NUM_ROTATIONS

    shape = (angle.shape[0], NUM_ROTATIONS, *angle.shape[2:])
    weights = torch.zeros(shape, dtype=angle.dtype, device=angle.device)
    weights.scatter_(1, lower, 1.0 - t)
    weights.scatter_(1, upper, t)
    return weights
