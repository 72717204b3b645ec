"""Consensus aggregation over parallel, independently failing workers."""

from .bbox import BBoxConsensus, BoxConsensusResult, expand_box, frame_box
from .mask import MaskConsensus, vote_threshold
from .statistics import robust_box_mean, robust_mean

__all__ = [
    "BBoxConsensus",
    "BoxConsensusResult",
    "expand_box",
    "frame_box",
    "MaskConsensus",
    "vote_threshold",
    "robust_box_mean",
    "robust_mean",
]
