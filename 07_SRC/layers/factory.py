# ==================================================
# ================  MODULE: factory  ===============
# ==================================================
from __future__ import annotations

from typing import Any, Optional, Protocol, Union, runtime_checkable

from core.config import GlobalConfig, GradOrientConvConfig, SSIMConfig
from core.errors import ConfigurationError
from layers.grad_orient_conv import GradOrientConv2d
from layers.ssim_loss import SSIMLoss

# Public API
__all__ = ["Layer", "build_layer"]

LayerConfig = Union[GradOrientConvConfig, SSIMConfig]


@runtime_checkable
class Layer(Protocol):
    """Lifecycle shared by the layers: one-time setup, per-call shape checks, forward."""

    def setup(self, *args: Any) -> None: ...

    def reshape(self, *inputs: Any) -> Any: ...

    def forward(self, *inputs: Any) -> Any: ...


def build_layer(
    config: LayerConfig,
    in_channels: Optional[int] = None,
    global_cfg: GlobalConfig = GlobalConfig(),
) -> Layer:
    """
    Instantiate the layer described by a typed configuration.

    Parameters
    ----------
    config : GradOrientConvConfig or SSIMConfig
        Typed layer options, e.g. one entry of `load_layer_configs`.
    in_channels : int, optional
        Input channel count; required for `GradOrientConvConfig`.
    global_cfg : GlobalConfig
        dtype and device of created parameters.

    Raises
    ------
    ConfigurationError
        On an unsupported config type or a missing `in_channels`.
    """
    if isinstance(config, GradOrientConvConfig):
        if in_channels is None:
            raise ConfigurationError("[build_layer] GradOrientConvolution needs in_channels.")
        return GradOrientConv2d(config, in_channels, global_cfg)
    if isinstance(config, SSIMConfig):
        return SSIMLoss(config, global_cfg)
    raise ConfigurationError(f"[build_layer] Unsupported layer config {type(config).__name__}.")
