# ==================================================
# ================  MODULE: config  ================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import torch
import yaml

from core.errors import ConfigurationError
from utils.decorators import log_warning_if

__all__ = [
    "GlobalConfig",
    "FillerConfig",
    "GaussianConfig",
    "ConvGeometry",
    "GradOrientConvConfig",
    "SSIMConfig",
    "LAYER_TYPES",
    "layer_configs_from_document",
    "load_layer_configs",
]

Pair = Tuple[int, int]


# ====[ Helper: resolve `x` vs `x_h`/`x_w` options ]====
def _resolve_pair(
    owner: str,
    name: str,
    single: Optional[int],
    h: Optional[int],
    w: Optional[int],
    default: Optional[int],
) -> Pair:
    """
    Resolve a square option given either once (`name`) or per axis (`name_h`, `name_w`).

    Raises
    ------
    ConfigurationError
        If both forms are given, if only one of `name_h`/`name_w` is given,
        or if neither form nor a default is available.
    """
    if h is not None or w is not None:
        if single is not None:
            raise ConfigurationError(
                f"[{owner}] Either {name} or {name}_h/{name}_w should be specified; not both."
            )
        if h is None or w is None:
            raise ConfigurationError(f"[{owner}] {name}_h and {name}_w must be given together.")
        return int(h), int(w)
    if single is not None:
        return int(single), int(single)
    if default is None:
        raise ConfigurationError(f"[{owner}] '{name}' is required.")
    return default, default


# ==================================================
# ===============  CLASS: GlobalConfig  ============
# ==================================================
@dataclass
class GlobalConfig:
    """
    Global configuration for operator behavior, independent of the layer.

    Attributes
    ----------
    framework : str, default "torch"
        Backend used for computations. NumPy inputs are converted to torch.
    output_format : str, default "torch"
        Format of the returned arrays ("torch" or "numpy").
    device : str, default "cpu"
        Target device for tensors created by operators (kernels, tables).
    dtype : torch.dtype, default torch.float32
        Floating point type of created tensors and converted NumPy inputs.
    verbose : bool, default False
        Print configuration summaries if True.
    """

    framework: str = "torch"
    output_format: str = "torch"
    device: str = "cpu"
    dtype: torch.dtype = torch.float32
    verbose: bool = False

    def update_config(self, **kwargs) -> "GlobalConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[GlobalConfig] Unknown config key: '{key}'")
        return self

    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print a summary of the global configuration."""
        info = {
            "framework": self.framework,
            "output_format": self.output_format,
            "device": self.device,
            "dtype": self.dtype,
            "verbose": self.verbose,
        }
        if printout:
            print("=== [ GlobalConfig Summary ] ===")
            for k in info:
                print(f"{k:<25}: {info[k]}")
        return info


# ==================================================
# ===============  CLASS: FillerConfig  ============
# ==================================================
@dataclass
class FillerConfig:
    """
    Parameter initialization strategy.

    Attributes
    ----------
    type : str, default "constant"
        One of "constant", "uniform", "gaussian", "xavier", "msra".
    value : float, default 0.0
        Fill value for "constant".
    min, max : float
        Bounds for "uniform".
    mean, std : float
        Moments for "gaussian".
    """
    type: str = "constant"
    value: float = 0.0
    min: float = 0.0
    max: float = 1.0
    mean: float = 0.0
    std: float = 1.0

    def update_config(self, **kwargs) -> "FillerConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[FillerConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ==============  CLASS: GaussianConfig  ===========
# ==================================================
@dataclass
class GaussianConfig:
    """
    Footprint and sliding-window geometry of the Gaussian smoother.

    Attributes
    ----------
    kernel_h, kernel_w : int
        Footprint of the Gaussian table.
    stride_h, stride_w : int, default 1
        Window stride.
    pad_h, pad_w : int, default 0
        Implicit zero padding.
    sigma : Optional[float]
        Standard deviation. If None, `(kernel_h + kernel_w) / 12`.
    normalize : bool, default True
        L1-normalize the table (sum to 1).
    """
    kernel_h: int = 3
    kernel_w: int = 3
    stride_h: int = 1
    stride_w: int = 1
    pad_h: int = 0
    pad_w: int = 0
    sigma: Optional[float] = None
    normalize: bool = True

    @property
    def kernel(self) -> Pair:
        return self.kernel_h, self.kernel_w

    @property
    def stride(self) -> Pair:
        return self.stride_h, self.stride_w

    @property
    def pad(self) -> Pair:
        return self.pad_h, self.pad_w

    def resolved_sigma(self) -> float:
        """Return the configured sigma or the footprint-derived default."""
        return self.sigma if self.sigma is not None else (self.kernel_h + self.kernel_w) / 12.0

    def update_config(self, **kwargs) -> "GaussianConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[GaussianConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ===============  CLASS: ConvGeometry  ============
# ==================================================
@dataclass(frozen=True)
class ConvGeometry:
    """Resolved (kernel, stride, pad) pairs of a sliding-window layer."""
    kernel: Pair
    stride: Pair
    pad: Pair

    def output_size(self, height: int, width: int) -> Pair:
        """`(H + 2 * pad - k) // stride + 1`, per spatial axis."""
        out_h = (height + 2 * self.pad[0] - self.kernel[0]) // self.stride[0] + 1
        out_w = (width + 2 * self.pad[1] - self.kernel[1]) // self.stride[1] + 1
        return out_h, out_w

    def gaussian_cfg(self, sigma: Optional[float] = None) -> GaussianConfig:
        """Gaussian smoother sharing this footprint, stride and padding."""
        return GaussianConfig(
            kernel_h=self.kernel[0],
            kernel_w=self.kernel[1],
            stride_h=self.stride[0],
            stride_w=self.stride[1],
            pad_h=self.pad[0],
            pad_w=self.pad[1],
            sigma=sigma,
        )


def _check_geometry(owner: str, kernel: Pair, stride: Pair, pad: Pair) -> None:
    if any(k <= 0 for k in kernel):
        raise ConfigurationError(f"[{owner}] Filter dimensions must be nonzero (got {kernel}).")
    if any(s <= 0 for s in stride):
        raise ConfigurationError(f"[{owner}] Stride dimensions must be nonzero (got {stride}).")
    if any(p < 0 for p in pad):
        raise ConfigurationError(f"[{owner}] Padding must be non-negative (got {pad}).")


# ==================================================
# ==========  CLASS: GradOrientConvConfig  =========
# ==================================================
@dataclass
class GradOrientConvConfig:
    """
    Options of the gradient-oriented convolution layer.

    `kernel_size`, `stride` and `pad` can each be given once or per axis
    (`*_h` / `*_w`), never both. The kernel must be square because its
    rotated copies have to share the footprint.

    Attributes
    ----------
    num_output : int
        Number of learned filters (output channels). Required, > 0.
    kernel_size, kernel_h, kernel_w : Optional[int]
        Filter footprint.
    stride, stride_h, stride_w : Optional[int]
        Filter stride (default 1).
    pad, pad_h, pad_w : Optional[int]
        Implicit zero padding (default 0).
    group : int, default 1
        Number of filter groups; must divide input and output channels.
    bias_term : bool, default True
        Learn an additive bias per output channel.
    weight_filler, bias_filler : FillerConfig
        Initialization strategies (xavier / constant 0 by default).
    gaussian_sigma : Optional[float]
        Override of the orientation smoothing sigma.
    """
    num_output: int = 0
    kernel_size: Optional[int] = None
    kernel_h: Optional[int] = None
    kernel_w: Optional[int] = None
    stride: Optional[int] = None
    stride_h: Optional[int] = None
    stride_w: Optional[int] = None
    pad: Optional[int] = None
    pad_h: Optional[int] = None
    pad_w: Optional[int] = None
    group: int = 1
    bias_term: bool = True
    weight_filler: FillerConfig = field(default_factory=lambda: FillerConfig(type="xavier"))
    bias_filler: FillerConfig = field(default_factory=FillerConfig)
    gaussian_sigma: Optional[float] = None

    def resolve(self) -> ConvGeometry:
        """
        Validate sizing options and return the resolved geometry.

        Raises
        ------
        ConfigurationError
            On missing, contradictory, non-positive or non-square sizes,
            or a non-positive `num_output` / `group`.
        """
        owner = "GradOrientConvConfig"
        if self.num_output is None or self.num_output <= 0:
            raise ConfigurationError(f"[{owner}] num_output must be > 0 (got {self.num_output}).")
        if self.group is None or self.group <= 0:
            raise ConfigurationError(f"[{owner}] group must be > 0 (got {self.group}).")
        if self.num_output % self.group != 0:
            raise ConfigurationError(f"[{owner}] Number of output should be multiples of group.")

        kernel = _resolve_pair(owner, "kernel", self.kernel_size, self.kernel_h, self.kernel_w, None)
        stride = _resolve_pair(owner, "stride", self.stride, self.stride_h, self.stride_w, 1)
        pad = _resolve_pair(owner, "pad", self.pad, self.pad_h, self.pad_w, 0)
        _check_geometry(owner, kernel, stride, pad)

        if kernel[0] != kernel[1]:
            raise ConfigurationError(f"[{owner}] The kernels should be square (got {kernel}).")
        if self.gaussian_sigma is not None and self.gaussian_sigma <= 0:
            raise ConfigurationError(f"[{owner}] gaussian_sigma must be > 0.")
        log_warning_if(
            kernel[0] % 2 == 0,
            f"[{owner}] Even kernel {kernel}: rotated copies have no centre tap.",
        )

        return ConvGeometry(kernel=kernel, stride=stride, pad=pad)

    def gaussian_cfg(self) -> GaussianConfig:
        """Gaussian smoother used for the orientation estimate."""
        return self.resolve().gaussian_cfg(sigma=self.gaussian_sigma)

    def update_config(self, **kwargs) -> "GradOrientConvConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[GradOrientConvConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ================  CLASS: SSIMConfig  =============
# ==================================================
@dataclass
class SSIMConfig:
    """
    Options of the windowed structural-similarity comparator.

    Attributes
    ----------
    kernel_size : int, default 11
        Gaussian window footprint.
    stride : int, default 1
        Window stride.
    pad : int, default 0
        Implicit zero padding of both inputs.
    c1, c2 : float
        Luminance and contrast stabilizers, `(0.01)^2` and `(0.03)^2` by default
        (data range 1).
    gaussian_sigma : Optional[float]
        Override of the window sigma. Defaults to `kernel_size / 6`.
    """
    kernel_size: int = 11
    stride: int = 1
    pad: int = 0
    c1: float = 0.01 ** 2
    c2: float = 0.03 ** 2
    gaussian_sigma: Optional[float] = None

    def resolve(self) -> ConvGeometry:
        """Validate the window options and return the resolved geometry."""
        owner = "SSIMConfig"
        kernel = (int(self.kernel_size), int(self.kernel_size))
        stride = (int(self.stride), int(self.stride))
        pad = (int(self.pad), int(self.pad))
        _check_geometry(owner, kernel, stride, pad)
        if self.c1 < 0 or self.c2 < 0:
            raise ConfigurationError(f"[{owner}] c1 and c2 must be non-negative.")
        if self.gaussian_sigma is not None and self.gaussian_sigma <= 0:
            raise ConfigurationError(f"[{owner}] gaussian_sigma must be > 0.")
        log_warning_if(
            self.c1 == 0 or self.c2 == 0,
            f"[{owner}] c1={self.c1}, c2={self.c2}: flat windows will divide by zero.",
        )
        return ConvGeometry(kernel=kernel, stride=stride, pad=pad)

    def gaussian_cfg(self) -> GaussianConfig:
        """Gaussian smoother used for the local statistics."""
        return self.resolve().gaussian_cfg(sigma=self.gaussian_sigma)

    def update_config(self, **kwargs) -> "SSIMConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[SSIMConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ==========  Textual layer descriptions  ==========
# ==================================================
LAYER_TYPES: Dict[str, type] = {
    "GradOrientConvolution": GradOrientConvConfig,
    "SSIMLoss": SSIMConfig,
}

_FILLER_KEYS = ("weight_filler", "bias_filler")


def _build_config(entry: Dict[str, Any]) -> Union[GradOrientConvConfig, SSIMConfig]:
    if not isinstance(entry, dict) or "type" not in entry:
        raise ConfigurationError("[load_layer_configs] Each layer entry needs a 'type' key.")
    params = dict(entry)
    layer_type = params.pop("type")
    params.pop("name", None)
    cfg_cls = LAYER_TYPES.get(layer_type)
    if cfg_cls is None:
        raise ConfigurationError(
            f"[load_layer_configs] Unknown layer type '{layer_type}'. "
            f"Expected one of {sorted(LAYER_TYPES)}."
        )

    known = {f.name for f in fields(cfg_cls)}
    unknown = sorted(set(params) - known)
    if unknown:
        raise ConfigurationError(f"[load_layer_configs] Unknown keys for '{layer_type}': {unknown}")

    for key in _FILLER_KEYS:
        if key in params and isinstance(params[key], dict):
            try:
                params[key] = FillerConfig(**params[key])
            except TypeError as e:
                raise ConfigurationError(f"[load_layer_configs] Invalid {key}: {e}") from e

    return cfg_cls(**params)


def load_layer_configs(source: Union[str, Path]) -> List[Union[GradOrientConvConfig, SSIMConfig]]:
    """
    Parse a YAML layer description into typed layer configurations.

    Parameters
    ----------
    source : str or Path
        Path to a YAML file, or the YAML text itself. The document must hold a
        `layers` list; each entry has a `type` (see `LAYER_TYPES`), an optional
        `name`, and the options of that layer.

    Returns
    -------
    list
        One config dataclass per layer entry, in order.

    Raises
    ------
    ConfigurationError
        If the document is malformed, a type is unknown, or an option is unknown.
    """
    path = Path(source) if isinstance(source, Path) else None
    if path is None and isinstance(source, str) and "\n" not in source and source.endswith((".yaml", ".yml")):
        path = Path(source)

    if path is not None:
        with path.open("r") as f:
            document = yaml.safe_load(f)
    else:
        document = yaml.safe_load(source)

    return layer_configs_from_document(document)


def layer_configs_from_document(document: Any) -> List[Union[GradOrientConvConfig, SSIMConfig]]:
    """Build layer configurations from an already parsed YAML document (see `load_layer_configs`)."""
    if not isinstance(document, dict) or not isinstance(document.get("layers"), list):
        raise ConfigurationError("[load_layer_configs] Expected a mapping with a 'layers' list.")

    return [_build_config(entry) for entry in document["layers"]]
