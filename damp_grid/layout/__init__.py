from .batch import BatchSwapSelector, SwapBatch, SwapCandidate
from .config import AdaptiveConfig, EpochParams, LayoutConfig, PolishConfig, ThresholdSchedule
from .energy import EnergyEvaluator
from .engine import AdaptiveState, EpochReport, LayoutEngine, LayoutResult, LayoutState, PhaseResult, PlacedCode
from .grid import EMPTY, GridState
from .similarity import SimilarityCache, gate, gate_array, raw_similarity

__all__ = [
    "AdaptiveConfig",
    "AdaptiveState",
    "BatchSwapSelector",
    "EMPTY",
    "EnergyEvaluator",
    "EpochParams",
    "EpochReport",
    "GridState",
    "LayoutConfig",
    "LayoutEngine",
    "LayoutResult",
    "LayoutState",
    "PhaseResult",
    "PlacedCode",
    "PolishConfig",
    "SimilarityCache",
    "SwapBatch",
    "SwapCandidate",
    "ThresholdSchedule",
    "gate",
    "gate_array",
    "raw_similarity",
]
