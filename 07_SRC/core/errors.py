# ==================================================
# ===============  MODULE: errors  =================
# ==================================================
from __future__ import annotations

# Public API
__all__ = ["ConfigurationError", "ShapeMismatchError"]


class ConfigurationError(ValueError):
    """
    Invalid or contradictory layer options (sizes, strides, groups, fillers).

    Raised once at setup time. A layer that failed setup must not be used.
    """


class ShapeMismatchError(ValueError):
    """
    Runtime tensor shapes that violate the configured or derived invariants.

    Raised at reshape time, i.e. once per input shape, never per element.
    """
