# ==================================================
# ==========  MODULE: grad_orient_conv  ============
# ==================================================
"""
Gradient-oriented convolution.

A single learned square kernel is turned by 0, 90, 180 and 270 degrees; at every
output location the four responses are blended with weights that follow the
locally dominant gradient orientation of an auxiliary (Gx, Gy) map.

Only the kernel, the bias and the primary input receive gradients. The
orientation is derived from the gradient map and treated as a constant: the
gradient map, the orientation map and the interpolation weights are not
learned through.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import torch
import torch.nn.functional as F
from torch import nn

from core.config import ConvGeometry, GlobalConfig, GradOrientConvConfig
from core.errors import ConfigurationError, ShapeMismatchError
from core.fillers import fill_
from operators.interpolation import angular_interpolation_weights
from operators.orientation import OrientationEstimator
from operators.rotation import NUM_ROTATIONS, build_kernel_bank, fold_bank_gradient
from utils.decorators import log_exceptions
from utils.logger import get_debug_logger, get_logger

# Public API
__all__ = [
    "GradOrientOutputs",
    "OrientedConvState",
    "grad_orient_conv_forward",
    "grad_orient_conv_backward",
    "GradOrientConvFunction",
    "GradOrientConv2d",
]

Pair = Tuple[int, int]


@dataclass
class GradOrientOutputs:
    """
    Attributes
    ----------
    output : torch.Tensor
        Convolution result, (N, num_output, H', W').
    sin_cos : torch.Tensor
        Sine and cosine of the orientation, (N, 2, H', W').
    smoothed : torch.Tensor
        Smoothed gradient map, (N, 2, H', W').
    """
    output: torch.Tensor
    sin_cos: torch.Tensor
    smoothed: torch.Tensor


@dataclass
class OrientedConvState:
    """Pass-scoped values a backward call needs from its forward call."""
    input: torch.Tensor
    weight: torch.Tensor
    interpolation: torch.Tensor
    stride: Pair
    pad: Pair
    groups: int


# ==================================================
# ============  Functional forward/backward  =======
# ==================================================
def grad_orient_conv_forward(
    input: torch.Tensor,
    gradient_map: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    estimator: OrientationEstimator,
    stride: Pair,
    pad: Pair,
    groups: int = 1,
) -> Tuple[GradOrientOutputs, OrientedConvState]:
    """
    Forward pass of the gradient-oriented convolution.

    For each rotation r, the input is correlated with the r-th bank entry and
    the response is scaled per location by the r-th interpolation weight (the
    same weight for every output channel). The bias is added once at the end.

    Returns
    -------
    (GradOrientOutputs, OrientedConvState)
        The three outputs and the state to hand to `grad_orient_conv_backward`.
    """
    orientation = estimator.estimate(gradient_map)
    interpolation = angular_interpolation_weights(orientation.angle).to(
        dtype=input.dtype, device=input.device
    )
    bank = build_kernel_bank(weight)

    output = None
    for r in range(NUM_ROTATIONS):
        response = F.conv2d(input, bank[r], None, stride, pad, 1, groups)
        weighted = response * interpolation[:, r:r + 1]
        output = weighted if output is None else output + weighted

    if bias is not None:
        output = output + bias.view(1, -1, 1, 1)

    outputs = GradOrientOutputs(output=output, sin_cos=orientation.sin_cos, smoothed=orientation.smoothed)
    state = OrientedConvState(
        input=input,
        weight=weight,
        interpolation=interpolation,
        stride=stride,
        pad=pad,
        groups=groups,
    )
    return outputs, state


def grad_orient_conv_backward(
    state: OrientedConvState,
    grad_output: torch.Tensor,
    input_grad: bool = True,
    weight_grad: bool = True,
    bias_grad: bool = True,
) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor], Optional[torch.Tensor]]:
    """
    Backward pass matching one `grad_orient_conv_forward` call.

    The upstream gradient is masked by each rotation's interpolation weight,
    pushed through the ordinary correlation rules into that rotation's kernel
    and into the input, and the four kernel gradients are folded back into the
    learned kernel through the inverse rotations.

    Returns
    -------
    (grad_input, grad_weight, grad_bias)
        Entries not requested are None.
    """
    bank = build_kernel_bank(state.weight)
    grad_input = torch.zeros_like(state.input) if input_grad else None
    bank_grads = []

    for r in range(NUM_ROTATIONS):
        grad_r = grad_output * state.interpolation[:, r:r + 1]
        if weight_grad:
            bank_grads.append(
                torch.nn.grad.conv2d_weight(
                    state.input, bank[r].shape, grad_r, state.stride, state.pad, 1, state.groups
                )
            )
        if input_grad:
            grad_input = grad_input + torch.nn.grad.conv2d_input(
                state.input.shape, bank[r], grad_r, state.stride, state.pad, 1, state.groups
            )

    grad_weight = fold_bank_gradient(torch.stack(bank_grads, dim=0)) if weight_grad else None
    grad_bias = grad_output.sum(dim=(0, 2, 3)) if bias_grad else None
    return grad_input, grad_weight, grad_bias


# ==================================================
# ============  GradOrientConvFunction  ============
# ==================================================
class GradOrientConvFunction(torch.autograd.Function):
    """
    Autograd binding of the functional forward/backward pair.

    The sin/cos and smoothed-gradient outputs are marked non-differentiable;
    no gradient is returned for the gradient map.
    """

    @staticmethod
    def forward(ctx, input, gradient_map, weight, bias, estimator, stride, pad, groups):
        outputs, state = grad_orient_conv_forward(
            input, gradient_map, weight, bias, estimator, stride, pad, groups
        )
        ctx.save_for_backward(input, weight, state.interpolation)
        ctx.stride = stride
        ctx.pad = pad
        ctx.groups = groups
        ctx.mark_non_differentiable(outputs.sin_cos, outputs.smoothed)
        return outputs.output, outputs.sin_cos, outputs.smoothed

    @staticmethod
    def backward(ctx, grad_output, grad_sin_cos, grad_smoothed):
        input, weight, interpolation = ctx.saved_tensors
        state = OrientedConvState(
            input=input,
            weight=weight,
            interpolation=interpolation,
            stride=ctx.stride,
            pad=ctx.pad,
            groups=ctx.groups,
        )
        grad_input, grad_weight, grad_bias = grad_orient_conv_backward(
            state,
            grad_output,
            input_grad=ctx.needs_input_grad[0],
            weight_grad=ctx.needs_input_grad[2],
            bias_grad=ctx.needs_input_grad[3],
        )
        return grad_input, None, grad_weight, grad_bias, None, None, None, None


# ==================================================
# ===============  GradOrientConv2d  ===============
# ==================================================
class GradOrientConv2d(nn.Module):
    """
    Convolution layer whose kernel follows the local gradient orientation.

    Inputs are the primary tensor (N, C, H, W) and its gradient map (N, 2, H, W).
    Outputs are the convolution result, the orientation sin/cos pair and the
    smoothed gradient map, all on the (H', W') output grid.

    Parameters
    ----------
    config : GradOrientConvConfig
        Layer options (sizes, stride, pad, group, bias, fillers).
    in_channels : int
        Channel count C of the primary input.
    global_cfg : GlobalConfig
        dtype and device of the parameters.
    """

    def __init__(
        self,
        config: GradOrientConvConfig,
        in_channels: int,
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__()
        self.config: GradOrientConvConfig = config
        self.global_cfg: GlobalConfig = global_cfg
        self._last_input_shape: Optional[torch.Size] = None
        self.setup(in_channels)

    # ====[ SETUP – validate options and allocate parameters ]====
    @log_exceptions(raise_exception=True)
    def setup(self, in_channels: int) -> None:
        """
        Validate the configuration, build the orientation estimator and fill the parameters.

        Raises
        ------
        ConfigurationError
            On invalid sizes, a group count that does not divide the channels,
            or an unknown filler.
        """
        geometry: ConvGeometry = self.config.resolve()
        if in_channels <= 0 or in_channels % self.config.group != 0:
            raise ConfigurationError(
                f"[GradOrientConv2d] in_channels={in_channels} must be positive and divisible by "
                f"group={self.config.group}."
            )

        self.geometry: ConvGeometry = geometry
        self.in_channels: int = in_channels
        self.out_channels: int = self.config.num_output
        self.groups: int = self.config.group
        self.estimator = OrientationEstimator(
            geometry.gaussian_cfg(sigma=self.config.gaussian_sigma), self.global_cfg
        )

        factory = {"dtype": self.global_cfg.dtype, "device": self.global_cfg.device}
        weight_shape = (self.out_channels, in_channels // self.groups, *geometry.kernel)
        self.weight = nn.Parameter(torch.empty(weight_shape, **factory))
        fill_(self.weight, self.config.weight_filler)

        if self.config.bias_term:
            self.bias = nn.Parameter(torch.empty(self.out_channels, **factory))
            fill_(self.bias, self.config.bias_filler)
        else:
            self.register_parameter("bias", None)

        get_logger().info(
            f"Setting up GradOrientConv2d: {in_channels} -> {self.out_channels}, kernel {geometry.kernel}, "
            f"stride {geometry.stride}, pad {geometry.pad}, group {self.groups}, bias {self.config.bias_term}"
        )

    # ====[ RESHAPE – per-shape checks ]====
    @log_exceptions(raise_exception=True)
    def reshape(self, input: torch.Tensor, gradient_map: torch.Tensor) -> Pair:
        """
        Check the inputs against the layer and return the output spatial size.

        Raises
        ------
        ShapeMismatchError
            If an input is not 4-D, the input channel count differs from the
            configured one, the gradient map does not have 2 channels, or the
            batch/spatial sizes of the two inputs differ.
        """
        if input.ndim != 4 or gradient_map.ndim != 4:
            raise ShapeMismatchError(
                f"[GradOrientConv2d] Inputs must be (N, C, H, W); got {tuple(input.shape)} "
                f"and {tuple(gradient_map.shape)}."
            )
        if input.shape[1] != self.in_channels:
            raise ShapeMismatchError(
                f"[GradOrientConv2d] Input size incompatible with convolution kernel: expected "
                f"{self.in_channels} channels, got {input.shape[1]}."
            )
        if gradient_map.shape[1] != 2:
            raise ShapeMismatchError(
                f"[GradOrientConv2d] Gradient map must have 2 channels (Gx, Gy), got {gradient_map.shape[1]}."
            )
        if gradient_map.shape[0] != input.shape[0] or gradient_map.shape[2:] != input.shape[2:]:
            raise ShapeMismatchError(
                f"[GradOrientConv2d] Gradient map {tuple(gradient_map.shape)} must match the input "
                f"batch and spatial size {tuple(input.shape)}."
            )

        out_h, out_w = self.geometry.output_size(input.shape[2], input.shape[3])
        if out_h <= 0 or out_w <= 0:
            raise ShapeMismatchError(
                f"[GradOrientConv2d] Kernel {self.geometry.kernel} does not fit input "
                f"{tuple(input.shape[2:])} with pad {self.geometry.pad}."
            )

        if self._last_input_shape != input.shape:
            get_debug_logger().debug(
                f"GradOrientConv2d reshape: input {tuple(input.shape)} -> output "
                f"{(input.shape[0], self.out_channels, out_h, out_w)}"
            )
            self._last_input_shape = input.shape
        return out_h, out_w

    # ====[ FORWARD ]====
    def forward(self, input: torch.Tensor, gradient_map: torch.Tensor) -> GradOrientOutputs:
        self.reshape(input, gradient_map)
        output, sin_cos, smoothed = GradOrientConvFunction.apply(
            input,
            gradient_map.detach(),
            self.weight,
            self.bias,
            self.estimator,
            self.geometry.stride,
            self.geometry.pad,
            self.groups,
        )
        return GradOrientOutputs(output=output, sin_cos=sin_cos, smoothed=smoothed)

    def extra_repr(self) -> str:
        return (
            f"{self.in_channels}, {self.out_channels}, kernel_size={self.geometry.kernel}, "
            f"stride={self.geometry.stride}, padding={self.geometry.pad}, groups={self.groups}, "
            f"bias={self.bias is not None}"
        )
