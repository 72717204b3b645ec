"""Segmentation mask models."""

from dataclasses import dataclass

import numpy as np


@dataclass
class CandidateMask:
    """One segmentation worker's output: a local raster placed at ``box_2d``."""
    box_2d: list[float]  # [y_min, x_min, y_max, x_max] in 0-1000
    raster: bytes  # encoded image (PNG or similar)
    label: str = ""
    worker: str = ""


@dataclass
class ConsensusMask:
    """Vote accumulator and its binarized, feathered result."""
    votes: np.ndarray  # int32, shape (H, W)
    threshold: int
    binary: np.ndarray  # bool, shape (H, W)
    feathered: np.ndarray  # uint8, shape (H, W)
    valid_results: int
    dispatched: int

    @property
    def coverage(self) -> float:
        """Fraction of pixels inside the binarized mask."""
        return float(self.binary.mean()) if self.binary.size else 0.0
