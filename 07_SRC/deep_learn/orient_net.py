# ==================================================
# ==============  MODULE: orient_net  ==============
# ==================================================
from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple, Union

import os
from pathlib import Path

import yaml
import torch
import torch.nn as nn
import torch.nn.functional as F

from core.config import GlobalConfig, GradOrientConvConfig, SSIMConfig, layer_configs_from_document
from core.errors import ConfigurationError
from deep_learn.utils import EarlyStopping
from layers.factory import build_layer
from layers.grad_orient_conv import GradOrientConv2d
from layers.ssim_loss import SSIMLoss
from operators.diff_operator import DiffOperator
from operators.metrics import PSNR
from utils.decorators import safe_timer
from utils.logger import get_logger

# Public API
__all__ = ["OrientNet", "train_step", "evaluate", "fit", "default_config_path"]

# --- config ---
base_dir = os.path.dirname(os.path.abspath(__file__))
default_config_path = os.path.join(base_dir, "orient_net_config.yaml")

Batch = Tuple[torch.Tensor, torch.Tensor]

# ------------------------- model -------------------------

class OrientNet(nn.Module):
    """
    Stack of gradient-oriented convolutions steered by the Sobel gradient of the input image.

    Every layer keeps the spatial size (3x3 kernels, pad 1, stride 1), so the
    gradient map of the input image steers all of them. LeakyReLU sits between
    layers; the last layer is linear. The `SSIMLoss` entry of the description
    becomes `self.loss_fn`.
    """

    def __init__(
        self,
        config_path: Union[str, Path] = default_config_path,
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__()
        with open(config_path, "r") as f:
            document = yaml.safe_load(f)

        self.in_channels: int = int(document.get("in_channels", 1))
        self.negative_slope: float = float(document.get("negative_slope", 0.01))
        self.gradient = DiffOperator(GlobalConfig(output_format="torch", dtype=global_cfg.dtype))

        convs: List[GradOrientConv2d] = []
        loss_fn: Optional[SSIMLoss] = None
        channels = self.in_channels
        for cfg in layer_configs_from_document(document):
            if isinstance(cfg, GradOrientConvConfig):
                convs.append(build_layer(cfg, in_channels=channels, global_cfg=global_cfg))
                channels = cfg.num_output
            elif isinstance(cfg, SSIMConfig):
                loss_fn = build_layer(cfg, global_cfg=global_cfg)

        if not convs:
            raise ConfigurationError(f"[OrientNet] No GradOrientConvolution layer in {config_path}.")
        for conv in convs:
            geometry = conv.geometry
            same_size = geometry.stride == (1, 1) and all(
                2 * p == k - 1 for p, k in zip(geometry.pad, geometry.kernel)
            )
            if not same_size:
                raise ConfigurationError(
                    f"[OrientNet] Every layer must keep the spatial size; got kernel {conv.geometry.kernel}, "
                    f"stride {conv.geometry.stride}, pad {conv.geometry.pad}."
                )

        self.convs = nn.ModuleList(convs)
        self.loss_fn: SSIMLoss = loss_fn if loss_fn is not None else SSIMLoss(SSIMConfig(), global_cfg)
        self.out_channels: int = channels
        get_logger().info(f"OrientNet built from {config_path}: {len(convs)} oriented layers.")

    def forward(self, image: torch.Tensor) -> Dict[str, torch.Tensor]:
        gradient_map = self.gradient.sobel_gradient(image).detach()

        x = image
        sin_cos = None
        for i, conv in enumerate(self.convs):
            out = conv(x, gradient_map)
            if sin_cos is None:
                sin_cos = out.sin_cos
            x = out.output
            if i < len(self.convs) - 1:
                x = F.leaky_relu(x, negative_slope=self.negative_slope)

        return {"output": x, "sin_cos": sin_cos, "gradient_map": gradient_map}

# ------------------------- training -------------------------

@safe_timer(raise_exception=True, name="train_step")
def train_step(
    model: OrientNet,
    optimizer: torch.optim.Optimizer,
    image: torch.Tensor,
    target: torch.Tensor,
    loss_fn: Optional[nn.Module] = None,
) -> float:
    """
    One optimization step on a batch.

    Returns
    -------
    float
        Loss value before the update.
    """
    model.train()
    criterion = loss_fn if loss_fn is not None else model.loss_fn
    optimizer.zero_grad()
    loss = criterion(model(image)["output"], target)
    loss.backward()
    optimizer.step()
    return float(loss.item())


@torch.no_grad()
def evaluate(model: OrientNet, batches: Iterable[Batch]) -> Dict[str, float]:
    """Mean loss and PSNR over validation batches."""
    model.eval()
    losses, psnrs = [], []
    for image, target in batches:
        output = model(image)["output"]
        losses.append(float(model.loss_fn(output, target).item()))
        psnrs.append(PSNR(target, output))
    if not losses:
        raise ValueError("[evaluate] No validation batches.")
    return {"loss": sum(losses) / len(losses), "psnr": sum(psnrs) / len(psnrs)}


def fit(
    model: OrientNet,
    optimizer: torch.optim.Optimizer,
    train_batches: Iterable[Batch],
    val_batches: Iterable[Batch],
    epochs: int = 10,
    early_stopping: Optional[EarlyStopping] = None,
) -> Dict[str, List[float]]:
    """
    Train for `epochs` epochs, evaluating after each, with optional early stopping.

    Returns
    -------
    dict
        Per-epoch "train_loss", "val_loss" and "val_psnr".
    """
    logger = get_logger()
    train_batches = list(train_batches)
    val_batches = list(val_batches)
    history: Dict[str, List[float]] = {"train_loss": [], "val_loss": [], "val_psnr": []}

    for epoch in range(epochs):
        epoch_losses = [train_step(model, optimizer, image, target) for image, target in train_batches]
        train_loss = sum(epoch_losses) / max(len(epoch_losses), 1)
        scores = evaluate(model, val_batches)

        history["train_loss"].append(train_loss)
        history["val_loss"].append(scores["loss"])
        history["val_psnr"].append(scores["psnr"])
        logger.info(
            f"Epoch {epoch + 1}/{epochs} - train_loss {train_loss:.4f} - "
            f"val_loss {scores['loss']:.4f} - val_psnr {scores['psnr']:.2f} dB"
        )

        if early_stopping is not None and early_stopping(scores["loss"], model, epoch, optimizer):
            break

    return history
