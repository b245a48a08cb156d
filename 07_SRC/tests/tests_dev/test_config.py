# ==================================================
# ======== TESTS: Config, fillers, factory =========
# ==================================================
from __future__ import annotations

from pathlib import Path

import pytest
import torch
import yaml

from core.config import (
    FillerConfig,
    GlobalConfig,
    GradOrientConvConfig,
    SSIMConfig,
    layer_configs_from_document,
    load_layer_configs,
)
from core.errors import ConfigurationError
from core.fillers import fill_
from layers.factory import Layer, build_layer
from layers.grad_orient_conv import GradOrientConv2d
from layers.ssim_loss import SSIMLoss
from operators.diff_operator import DiffOperator


LAYER_YAML = """
layers:
  - name: conv1
    type: GradOrientConvolution
    num_output: 6
    kernel_size: 5
    stride_h: 2
    stride_w: 1
    pad: 2
    group: 3
    weight_filler: {type: gaussian, std: 0.01}
    bias_filler: {type: constant, value: 0.5}
  - type: SSIMLoss
    kernel_size: 7
    c2: 0.001
"""


# ===================
# YAML descriptions
# ===================

def test_load_layer_configs_from_text():
    conv_cfg, ssim_cfg = load_layer_configs(LAYER_YAML)

    assert isinstance(conv_cfg, GradOrientConvConfig)
    assert conv_cfg.num_output == 6
    assert conv_cfg.weight_filler == FillerConfig(type="gaussian", std=0.01)
    assert conv_cfg.bias_filler.value == 0.5
    geometry = conv_cfg.resolve()
    assert geometry.kernel == (5, 5)
    assert geometry.stride == (2, 1)
    assert geometry.pad == (2, 2)

    assert isinstance(ssim_cfg, SSIMConfig)
    assert ssim_cfg.kernel_size == 7
    assert ssim_cfg.c2 == 0.001
    assert ssim_cfg.c1 == pytest.approx(1e-4)


def test_load_layer_configs_from_file(tmp_path: Path):
    path = tmp_path / "net.yaml"
    path.write_text(LAYER_YAML)
    assert len(load_layer_configs(path)) == 2
    assert len(load_layer_configs(str(path))) == 2


def test_layer_configs_from_parsed_document():
    document = yaml.safe_load(LAYER_YAML)
    configs = layer_configs_from_document(document)
    assert [type(c) for c in configs] == [GradOrientConvConfig, SSIMConfig]
    assert configs == load_layer_configs(LAYER_YAML)
    with pytest.raises(ConfigurationError):
        layer_configs_from_document(["not", "a", "mapping"])


@pytest.mark.parametrize(
    "text",
    [
        "layers: [{type: Pooling, kernel_size: 2}]",
        "layers: [{type: GradOrientConvolution, num_output: 2, kernel_size: 3, dilation: 2}]",
        "layers: [{num_output: 2}]",
        "name: net",
        "layers: [{type: GradOrientConvolution, num_output: 2, kernel_size: 3, weight_filler: {kind: xavier}}]",
    ],
)
def test_bad_descriptions_raise(text):
    with pytest.raises(ConfigurationError):
        load_layer_configs(text)


# ===================
# Option resolution
# ===================

def test_defaults_resolve():
    geometry = GradOrientConvConfig(num_output=1, kernel_size=3).resolve()
    assert geometry.stride == (1, 1)
    assert geometry.pad == (0, 0)
    assert geometry.output_size(7, 5) == (5, 3)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"kernel_size": 3, "kernel_h": 3, "kernel_w": 3},
        {"kernel_h": 3},
        {"kernel_size": 3, "pad": 1, "pad_h": 1, "pad_w": 1},
        {"kernel_size": 3, "stride_w": 2},
        {"kernel_size": 0},
        {"kernel_size": 3, "pad": -1},
        {"kernel_size": 3, "gaussian_sigma": 0.0},
    ],
)
def test_invalid_sizing_raises(kwargs):
    with pytest.raises(ConfigurationError):
        GradOrientConvConfig(num_output=2, **kwargs).resolve()


def test_gaussian_cfg_shares_geometry():
    cfg = GradOrientConvConfig(num_output=2, kernel_size=5, stride=2, pad_h=1, pad_w=2, gaussian_sigma=1.5)
    g = cfg.gaussian_cfg()
    assert (g.kernel, g.stride, g.pad, g.sigma) == ((5, 5), (2, 2), (1, 2), 1.5)


def test_ssim_config_validation():
    assert SSIMConfig().gaussian_cfg().resolved_sigma() == pytest.approx(11 / 6)
    with pytest.raises(ConfigurationError):
        SSIMConfig(kernel_size=0).resolve()
    with pytest.raises(ConfigurationError):
        SSIMConfig(c1=-1.0).resolve()


def test_update_config():
    cfg = GradOrientConvConfig(num_output=2, kernel_size=3).update_config(num_output=4, pad=1)
    assert cfg.num_output == 4 and cfg.pad == 1
    with pytest.raises(AttributeError):
        cfg.update_config(dilation=2)
    with pytest.raises(AttributeError):
        GlobalConfig().update_config(backend="parallel")


def test_summaries_report_the_global_configuration(capsys):
    info = GlobalConfig(dtype=torch.float64).summary(printout=False)
    assert info == {
        "framework": "torch",
        "output_format": "torch",
        "device": "cpu",
        "dtype": torch.float64,
        "verbose": False,
    }
    assert capsys.readouterr().out == ""

    sobel = DiffOperator(GlobalConfig(verbose=True))
    printed = capsys.readouterr().out
    assert "DiffOperator Summary" in printed
    assert "dtype" in printed
    assert sobel.summary(printout=False)["operator"] == "DiffOperator"

    DiffOperator(GlobalConfig())
    assert capsys.readouterr().out == ""


# ===================
# Fillers
# ===================

def test_constant_and_uniform_fillers():
    t = torch.empty(3, 4)
    fill_(t, FillerConfig(type="constant", value=2.0))
    assert torch.all(t == 2.0)
    fill_(t, FillerConfig(type="uniform", min=-0.5, max=0.25))
    assert torch.all(t >= -0.5) and torch.all(t <= 0.25)


def test_xavier_bound_uses_fan_in():
    torch.manual_seed(0)
    t = torch.empty(8, 2, 3, 3)
    fill_(t, FillerConfig(type="xavier"))
    assert torch.all(t.abs() <= (3.0 / 18) ** 0.5)


def test_msra_and_gaussian_fillers():
    torch.manual_seed(0)
    t = torch.empty(64, 8, 3, 3)
    fill_(t, FillerConfig(type="msra"))
    assert float(t.std()) == pytest.approx((2.0 / 72) ** 0.5, rel=0.1)
    fill_(t, FillerConfig(type="gaussian", mean=1.0, std=0.1))
    assert float(t.mean()) == pytest.approx(1.0, abs=0.01)


@pytest.mark.parametrize(
    "cfg",
    [FillerConfig(type="bilinear"), FillerConfig(type="gaussian", std=0.0), FillerConfig(type="uniform", min=1, max=0)],
)
def test_bad_fillers_raise(cfg):
    with pytest.raises(ConfigurationError):
        fill_(torch.empty(2, 2), cfg)


# ===================
# Factory
# ===================

def test_build_layer_dispatch():
    conv_cfg, ssim_cfg = load_layer_configs(LAYER_YAML)
    conv = build_layer(conv_cfg, in_channels=3)
    loss = build_layer(ssim_cfg)

    assert isinstance(conv, GradOrientConv2d)
    assert isinstance(loss, SSIMLoss)
    assert isinstance(conv, Layer) and isinstance(loss, Layer)
    assert torch.all(conv.bias == 0.5)
    assert conv.weight.shape == (6, 1, 5, 5)


def test_build_layer_errors():
    with pytest.raises(ConfigurationError):
        build_layer(GradOrientConvConfig(num_output=2, kernel_size=3))
    with pytest.raises(ConfigurationError):
        build_layer(FillerConfig())
