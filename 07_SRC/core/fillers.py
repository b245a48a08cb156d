# ==================================================
# ===============  MODULE: fillers  ================
# ==================================================
from __future__ import annotations

from typing import Callable, Dict

import torch
from torch import nn

from core.config import FillerConfig
from core.errors import ConfigurationError

# Public API
__all__ = ["FILLERS", "fill_"]


# Xavier/MSRA follow the fan-in convention: fan_in = in_channels/group * k * k.
def _fan_in(tensor: torch.Tensor) -> int:
    return int(tensor[0].numel()) if tensor.ndim > 1 else int(tensor.numel())


def _constant(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    return nn.init.constant_(tensor, cfg.value)


def _uniform(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    if cfg.min > cfg.max:
        raise ConfigurationError(f"[fill_] uniform filler needs min <= max (got {cfg.min}, {cfg.max}).")
    return nn.init.uniform_(tensor, a=cfg.min, b=cfg.max)


def _gaussian(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    if cfg.std <= 0:
        raise ConfigurationError(f"[fill_] gaussian filler needs std > 0 (got {cfg.std}).")
    return nn.init.normal_(tensor, mean=cfg.mean, std=cfg.std)


def _xavier(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    scale = (3.0 / _fan_in(tensor)) ** 0.5
    return nn.init.uniform_(tensor, a=-scale, b=scale)


def _msra(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    return nn.init.normal_(tensor, mean=0.0, std=(2.0 / _fan_in(tensor)) ** 0.5)


FILLERS: Dict[str, Callable[[torch.Tensor, FillerConfig], torch.Tensor]] = {
    "constant": _constant,
    "uniform": _uniform,
    "gaussian": _gaussian,
    "xavier": _xavier,
    "msra": _msra,
}


@torch.no_grad()
def fill_(tensor: torch.Tensor, cfg: FillerConfig) -> torch.Tensor:
    """
    Initialize `tensor` in place with the strategy named by `cfg.type`.

    Raises
    ------
    ConfigurationError
        If the filler type is unknown or its parameters are invalid.
    """
    filler = FILLERS.get(cfg.type.lower())
    if filler is None:
        raise ConfigurationError(f"[fill_] Unknown filler type '{cfg.type}'. Expected one of {sorted(FILLERS)}.")
    return filler(tensor, cfg)
