from .base import CandidateSet, DeviceInitError, LayoutBackend
from .parallel import ParallelBackend
from .sequential import SequentialBackend

__all__ = [
    "CandidateSet",
    "DeviceInitError",
    "LayoutBackend",
    "ParallelBackend",
    "SequentialBackend",
]
