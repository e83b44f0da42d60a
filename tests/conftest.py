import pytest

from damp_grid.encoding.bitarray import BitArray
from damp_grid.logging import LOGGER


@pytest.fixture(autouse=True)
def quiet_logger():
    LOGGER.set_console(False)
    LOGGER.reset_intervals()
    yield
    LOGGER.set_console(True)


def make_ring_codes(count: int, length: int = 48, width: int = 8) -> list[tuple[int, BitArray]]:
    """Codes whose active window slides around a ring of bits."""
    codes = []
    for k in range(count):
        start = (k * length) // count
        indices = [(start + offset) % length for offset in range(width)]
        codes.append((k, BitArray.from_indices(length, indices)))
    return codes


@pytest.fixture
def ring_codes():
    return make_ring_codes(30)
