from .encoding import BitArray
from .layout import AdaptiveConfig, LayoutConfig, LayoutEngine, LayoutResult, LayoutState, PlacedCode, PolishConfig
from .logging import LOGGER

__all__ = [
    "AdaptiveConfig",
    "BitArray",
    "LOGGER",
    "LayoutConfig",
    "LayoutEngine",
    "LayoutResult",
    "LayoutState",
    "PlacedCode",
    "PolishConfig",
]
