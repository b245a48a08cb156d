# ==================================================
# ========= TESTS: Gradient-oriented conv ==========
# ==================================================
from __future__ import annotations

from typing import Optional

import pytest
import torch
import torch.nn.functional as F
from torch.autograd import gradcheck

from core.config import GaussianConfig, GlobalConfig, GradOrientConvConfig
from core.errors import ConfigurationError, ShapeMismatchError
from layers.grad_orient_conv import (
    GradOrientConv2d,
    GradOrientConvFunction,
    grad_orient_conv_backward,
    grad_orient_conv_forward,
)
from operators.interpolation import angular_interpolation_weights
from operators.orientation import OrientationEstimator


# ===================
# Helpers
# ===================

F64 = GlobalConfig(dtype=torch.float64)


def _estimator(kernel: int, stride: int, pad: int) -> OrientationEstimator:
    cfg = GaussianConfig(
        kernel_h=kernel, kernel_w=kernel,
        stride_h=stride, stride_w=stride,
        pad_h=pad, pad_w=pad,
    )
    return OrientationEstimator(cfg, F64)


def _reference(x, gmap, weight, bias: Optional[torch.Tensor], estimator, stride, pad, groups):
    """Same forward written with differentiable ops only; autograd supplies the backward."""
    angle = estimator.estimate(gmap).angle
    alphas = angular_interpolation_weights(angle)
    out = 0
    for r in range(4):
        rotated = torch.rot90(weight, k=r, dims=(-2, -1))
        out = out + F.conv2d(x, rotated, None, stride, pad, 1, groups) * alphas[:, r:r + 1]
    if bias is not None:
        out = out + bias.view(1, -1, 1, 1)
    return out


# ===================
# Fixtures
# ===================

@pytest.fixture
def layer() -> GradOrientConv2d:
    torch.manual_seed(0)
    cfg = GradOrientConvConfig(num_output=4, kernel_size=3, pad=1, group=2)
    return GradOrientConv2d(cfg, in_channels=2, global_cfg=F64)


# ===================
# Forward
# ===================

def test_diagonal_gradient_blends_first_two_rotations():
    """Kernel [[1, 0], [0, 0]] at 45 degrees: half top-left plus half bottom-left of each window."""
    cfg = GradOrientConvConfig(num_output=1, kernel_size=2, stride=2, pad=0, bias_term=False)
    conv = GradOrientConv2d(cfg, in_channels=1)
    with torch.no_grad():
        conv.weight.copy_(torch.tensor([[[[1.0, 0.0], [0.0, 0.0]]]]))

    x = torch.arange(16.0).view(1, 1, 4, 4)
    gmap = torch.ones(1, 2, 4, 4)
    out = conv(x, gmap)

    expected = 0.5 * (x[:, :, 0::2, 0::2] + x[:, :, 1::2, 0::2])
    assert out.output.shape == (1, 1, 2, 2)
    assert torch.allclose(out.output, expected, atol=1e-5)
    assert torch.allclose(out.sin_cos, torch.full((1, 2, 2, 2), 0.5 ** 0.5), atol=1e-6)
    assert torch.allclose(out.smoothed, torch.ones(1, 2, 2, 2), atol=1e-6)


def test_zero_gradient_map_is_plain_convolution(layer):
    x = torch.randn(2, 2, 6, 5, dtype=torch.float64)
    out = layer(x, torch.zeros(2, 2, 6, 5, dtype=torch.float64))
    plain = F.conv2d(x, layer.weight, layer.bias, 1, 1, 1, 2)
    assert torch.allclose(out.output, plain)


def test_output_shapes_follow_geometry():
    cfg = GradOrientConvConfig(num_output=3, kernel_size=3, stride_h=2, stride_w=1, pad_h=1, pad_w=0)
    conv = GradOrientConv2d(cfg, in_channels=2)
    out = conv(torch.randn(2, 2, 9, 8), torch.randn(2, 2, 9, 8))
    assert out.output.shape == (2, 3, 5, 6)
    assert out.sin_cos.shape == (2, 2, 5, 6)
    assert out.smoothed.shape == (2, 2, 5, 6)


def test_matches_differentiable_reference(layer):
    torch.manual_seed(1)
    x = torch.randn(2, 2, 7, 7, dtype=torch.float64, requires_grad=True)
    gmap = torch.randn(2, 2, 7, 7, dtype=torch.float64)

    out = layer(x, gmap).output
    upstream = torch.randn_like(out)
    gx, gw, gb = torch.autograd.grad(out, (x, layer.weight, layer.bias), upstream)

    ref = _reference(x, gmap, layer.weight, layer.bias, layer.estimator, (1, 1), (1, 1), 2)
    rx, rw, rb = torch.autograd.grad(ref, (x, layer.weight, layer.bias), upstream)

    assert torch.allclose(out, ref)
    assert torch.allclose(gx, rx)
    assert torch.allclose(gw, rw)
    assert torch.allclose(gb, rb)


# ===================
# Backward
# ===================

@pytest.mark.parametrize("stride, pad, groups", [(1, 1, 1), (2, 0, 1), (2, 1, 2)])
def test_gradcheck(stride, pad, groups):
    torch.manual_seed(2)
    x = torch.randn(2, 2, 6, 6, dtype=torch.float64, requires_grad=True)
    w = torch.randn(4, 2 // groups, 3, 3, dtype=torch.float64, requires_grad=True)
    b = torch.randn(4, dtype=torch.float64, requires_grad=True)
    gmap = torch.randn(2, 2, 6, 6, dtype=torch.float64)
    est = _estimator(3, stride, pad)

    def fn(x, w, b):
        return GradOrientConvFunction.apply(x, gmap, w, b, est, (stride, stride), (pad, pad), groups)[0]

    assert gradcheck(fn, (x, w, b), eps=1e-6, atol=1e-6)


def test_finite_difference_on_one_kernel_weight(layer):
    torch.manual_seed(3)
    x = torch.randn(1, 2, 6, 6, dtype=torch.float64)
    gmap = torch.randn(1, 2, 6, 6, dtype=torch.float64)

    layer(x, gmap).output.pow(2).sum().backward()
    analytic = layer.weight.grad[1, 0, 0, 2].item()

    h = 1e-6
    with torch.no_grad():
        layer.weight[1, 0, 0, 2] += h
        plus = layer(x, gmap).output.pow(2).sum().item()
        layer.weight[1, 0, 0, 2] -= 2 * h
        minus = layer(x, gmap).output.pow(2).sum().item()
        layer.weight[1, 0, 0, 2] += h

    assert analytic == pytest.approx((plus - minus) / (2 * h), rel=1e-5, abs=1e-7)


def test_functional_backward_respects_flags():
    torch.manual_seed(4)
    x = torch.randn(1, 1, 5, 5, dtype=torch.float64)
    w = torch.randn(2, 1, 3, 3, dtype=torch.float64)
    outputs, state = grad_orient_conv_forward(
        x, torch.randn(1, 2, 5, 5, dtype=torch.float64), w, None, _estimator(3, 1, 0), (1, 1), (0, 0)
    )
    gi, gw, gb = grad_orient_conv_backward(state, torch.ones_like(outputs.output), input_grad=False, bias_grad=False)
    assert gi is None and gb is None
    assert gw.shape == w.shape
    assert state.interpolation.shape == (1, 4, 3, 3)


def test_no_gradient_reaches_gradient_map(layer):
    x = torch.randn(1, 2, 5, 5, dtype=torch.float64, requires_grad=True)
    gmap = torch.randn(1, 2, 5, 5, dtype=torch.float64, requires_grad=True)
    out = layer(x, gmap)
    assert not out.sin_cos.requires_grad
    assert not out.smoothed.requires_grad
    out.output.sum().backward()
    assert gmap.grad is None
    assert x.grad is not None


def test_bias_gradient_is_upstream_sum(layer):
    x = torch.randn(3, 2, 4, 4, dtype=torch.float64)
    out = layer(x, torch.randn(3, 2, 4, 4, dtype=torch.float64)).output
    upstream = torch.randn_like(out)
    out.backward(upstream)
    assert torch.allclose(layer.bias.grad, upstream.sum(dim=(0, 2, 3)))


# ===================
# Setup / reshape errors
# ===================

def test_parameters_follow_config(layer):
    assert layer.weight.shape == (4, 1, 3, 3)
    assert layer.weight.dtype == torch.float64
    assert torch.equal(layer.bias, torch.zeros(4, dtype=torch.float64))
    bound = (3.0 / 9) ** 0.5
    assert torch.all(layer.weight.abs() <= bound)


def test_no_bias_term():
    conv = GradOrientConv2d(GradOrientConvConfig(num_output=2, kernel_size=3, bias_term=False), in_channels=1)
    assert conv.bias is None
    assert [name for name, _ in conv.named_parameters()] == ["weight"]


@pytest.mark.parametrize(
    "cfg, in_channels",
    [
        (GradOrientConvConfig(num_output=2, kernel_h=3, kernel_w=2), 1),
        (GradOrientConvConfig(num_output=2, kernel_size=3, kernel_h=3, kernel_w=3), 1),
        (GradOrientConvConfig(num_output=0, kernel_size=3), 1),
        (GradOrientConvConfig(num_output=2, kernel_size=3, group=2), 3),
        (GradOrientConvConfig(num_output=3, kernel_size=3, group=2), 2),
        (GradOrientConvConfig(num_output=2, kernel_size=3, stride=0), 1),
        (GradOrientConvConfig(num_output=2), 1),
    ],
)
def test_invalid_configuration_raises(cfg, in_channels):
    with pytest.raises(ConfigurationError):
        GradOrientConv2d(cfg, in_channels=in_channels)


@pytest.mark.parametrize(
    "x_shape, g_shape",
    [
        ((1, 2, 6, 6), (1, 3, 6, 6)),
        ((1, 2, 6, 6), (1, 2, 6, 5)),
        ((1, 2, 6, 6), (2, 2, 6, 6)),
        ((1, 3, 6, 6), (1, 2, 6, 6)),
        ((2, 6, 6), (1, 2, 6, 6)),
    ],
)
def test_shape_mismatch_raises(layer, x_shape, g_shape):
    x = torch.zeros(x_shape, dtype=torch.float64)
    g = torch.zeros(g_shape, dtype=torch.float64)
    with pytest.raises(ShapeMismatchError):
        layer(x, g)


def test_reshape_returns_output_size(layer):
    x = torch.zeros(1, 2, 8, 6, dtype=torch.float64)
    assert layer.reshape(x, torch.zeros(1, 2, 8, 6, dtype=torch.float64)) == (8, 6)


# ===================
# Mixed precision and orientation seams
# ===================

def test_double_gradient_map_keeps_layer_precision():
    torch.manual_seed(3)
    conv = GradOrientConv2d(GradOrientConvConfig(num_output=2, kernel_size=3, pad=1), in_channels=1)
    x = torch.randn(1, 1, 6, 6, requires_grad=True)
    gmap = torch.randn(1, 2, 6, 6, dtype=torch.float64)

    out = conv(x, gmap)
    assert out.output.dtype == torch.float32

    out.output.sum().backward()
    assert x.grad.dtype == torch.float32
    assert conv.weight.grad.dtype == torch.float32
    assert torch.isfinite(x.grad).all()
    assert torch.isfinite(conv.weight.grad).all()


def _uniform_gradient_map(degrees: float, shape=(1, 2, 6, 5)) -> torch.Tensor:
    theta = torch.deg2rad(torch.tensor(degrees, dtype=torch.float64))
    gmap = torch.empty(shape, dtype=torch.float64)
    gmap[:, 0] = torch.cos(theta)
    gmap[:, 1] = torch.sin(theta)
    return gmap


@pytest.mark.parametrize("below, above", [(-90.0, -90.0), (0.0, 0.0), (90.0, 90.0), (180.0, -180.0)])
def test_output_is_continuous_across_orientation_seams(layer, below, above):
    eps = 1e-6
    x = torch.randn(1, 2, 6, 5, dtype=torch.float64)
    with torch.no_grad():
        out_below = layer(x, _uniform_gradient_map(below - eps)).output
        out_above = layer(x, _uniform_gradient_map(above + eps)).output
    assert torch.allclose(out_below, out_above, atol=1e-6)


def test_output_varies_smoothly_over_a_full_turn(layer):
    x = torch.randn(1, 2, 6, 5, dtype=torch.float64)
    degrees = torch.linspace(-180.0, 180.0, 361, dtype=torch.float64)
    with torch.no_grad():
        outputs = torch.stack([layer(x, _uniform_gradient_map(float(d))).output for d in degrees])

    responses = torch.stack([
        F.conv2d(x, torch.rot90(layer.weight, k=r, dims=(-2, -1)), None, 1, 1, 1, 2) for r in range(4)
    ])
    steps = (outputs[1:] - outputs[:-1]).abs().amax(dim=(1, 2, 3, 4))
    # One degree moves 1/90 of the weight between two rotations.
    bound = 2.0 / 90.0 * responses.abs().amax().detach() + 1e-9
    assert torch.all(steps <= bound)
    assert torch.allclose(outputs[0], outputs[-1], atol=1e-9)


def test_setup_resolves_configuration_once(monkeypatch):
    calls = []
    resolve = GradOrientConvConfig.resolve

    def counting_resolve(self):
        calls.append(self)
        return resolve(self)

    monkeypatch.setattr(GradOrientConvConfig, "resolve", counting_resolve)
    GradOrientConv2d(GradOrientConvConfig(num_output=2, kernel_size=2, pad=0), in_channels=1)
    assert len(calls) == 1
