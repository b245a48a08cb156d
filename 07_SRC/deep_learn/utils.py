# ==================================================
# ===============  MODULE: utils  ==================
# ==================================================
from __future__ import annotations

import torch
import matplotlib.pyplot as plt
from typing import Any, Dict, Optional, Sequence

from utils.logger import get_logger

# Public API
__all__ = ["EarlyStopping", "plot_training"]

# ==================================================
# ================== EarlyStopping =================
# ==================================================

class EarlyStopping:
    def __init__(
        self,
        save_path: str,
        patience: int = 5,
        min_delta: float = 1e-3,
        save_model: bool = True,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Args:
            save_path (str): Path to save the best model checkpoint.
            patience (int): Number of epochs with no improvement before stopping.
            min_delta (float): Minimum required improvement to consider as progress.
            save_model (bool): Whether to save the model when improvement occurs.
            params (dict): Hyperparameters stored alongside the checkpoint.
        """
        if not isinstance(patience, int) or patience <= 0:
            raise ValueError("[EarlyStopping] patience must be a positive integer.")
        if not (isinstance(min_delta, (int, float)) and min_delta >= 0.0):
            raise ValueError("[EarlyStopping] min_delta must be a non-negative float.")
        if not isinstance(save_path, str) or not save_path:
            raise ValueError("[EarlyStopping] save_path must be a non-empty string.")

        self.patience = patience
        self.min_delta = float(min_delta)
        self.counter = 0
        self.best_loss: Optional[float] = None
        self.best_epoch: int = -1
        self.save_model = bool(save_model)
        self.save_path = save_path
        self.params = dict(params) if params is not None else None
        self.logger = get_logger()

    def __call__(
        self,
        val_loss: float,
        model: Optional[torch.nn.Module] = None,
        epoch: Optional[int] = None,
        optimizer: Optional[torch.optim.Optimizer] = None,
    ) -> bool:
        """
        Update early-stopping state.

        Returns
        -------
        bool
            True if training should stop, False otherwise.
        """
        improved = (self.best_loss is None) or (val_loss < self.best_loss - self.min_delta)

        if improved:
            self.best_loss = val_loss
            self.best_epoch = epoch
            self.counter = 0

            if self.save_model and model is not None:
                checkpoint: Dict[str, Any] = {
                    "epoch": epoch,
                    "model_state": model.state_dict(),
                    "best_val_loss": self.best_loss,
                }
                if optimizer is not None:
                    checkpoint["optimizer_state"] = optimizer.state_dict()
                if self.params is not None:
                    checkpoint["params"] = self.params

                torch.save(checkpoint, self.save_path)
                self.logger.info(f"Best model saved at epoch {epoch} with val_loss = {val_loss:.4f}")
            return False

        self.counter += 1
        self.logger.info(f"No improvement detected ({self.counter}/{self.patience})")
        if self.counter >= self.patience:
            self.logger.info(f"Early stopping triggered at epoch {epoch}.")
            return True
        return False


def plot_training(train_losses: Sequence[float], val_losses: Sequence[float], show: bool = True) -> plt.Figure:
    """
    Plot training and validation loss curves.

    Args:
        train_losses (list of float): Training losses per epoch.
        val_losses (list of float): Validation losses per epoch.
        show (bool): Call `plt.show()` after drawing.
    """
    if len(train_losses) != len(val_losses):
        raise ValueError("[plot_training] train_losses and val_losses must have the same length.")

    fig, ax = plt.subplots(1, 1, figsize=(7, 5))
    ax.plot(list(train_losses), label="Train Loss")
    ax.plot(list(val_losses), label="Validation Loss")
    ax.set_title("SSIM Loss per Epoch")
    ax.set_xlabel("Epoch")
    ax.set_ylabel("Loss")
    ax.legend()
    fig.tight_layout()
    if show:
        plt.show()
    return fig
