"""
Packing of heterogeneous parameter blocks into one flat vector.

Gradient-based optimizers work on a single contiguous float64 vector. Model
parameters come as a fixed, ordered tuple of blocks (e.g. a Q x Q matrix and a
length-K vector). This module keeps a small offset table describing where each
block lives inside the flat vector and returns numpy views aliased into it.
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Sequence, Tuple


class DimensionMismatchError(ValueError):
    """Raised when an array does not have the shape its caller declared."""


@dataclass(frozen=True)
class BlockSpec:
    """Shape and position of one block inside the packed vector."""
    shape: Tuple[int, ...]
    offset: int
    size: int


class TupleMetadata:
    """
    Offset table for an ordered tuple of fixed-shape blocks.

    Blocks are laid out contiguously in declaration order, each in C order.

    Parameters
    ----------
    shapes : sequence of tuples
        Shape of every block, e.g. ``[(Q, Q), (K,)]``
    """

    def __init__(self, shapes: Sequence[Tuple[int, ...]]):
        blocks = []
        offset = 0
        for shape in shapes:
            shape = tuple(int(s) for s in shape)
            if any(s < 0 for s in shape):
                raise DimensionMismatchError(f"Negative block dimension in shape {shape}")
            size = int(np.prod(shape, dtype=np.int64))
            blocks.append(BlockSpec(shape=shape, offset=offset, size=size))
            offset += size

        self.blocks: Tuple[BlockSpec, ...] = tuple(blocks)
        self.packed_size: int = offset

    def __len__(self) -> int:
        return len(self.blocks)

    def _check_buffer(self, buffer: np.ndarray) -> np.ndarray:
        if buffer.ndim != 1 or buffer.shape[0] != self.packed_size:
            raise DimensionMismatchError(
                f"Packed buffer has shape {buffer.shape}, expected ({self.packed_size},)")
        return buffer

    def map(self, index: int, buffer: np.ndarray) -> np.ndarray:
        """
        Typed view of block ``index`` aliased into ``buffer``.

        Writing through the returned array writes into ``buffer``; the view
        never overlaps another block.
        """
        buffer = self._check_buffer(buffer)
        block = self.blocks[index]
        return buffer[block.offset:block.offset + block.size].reshape(block.shape)

    def copy(self, index: int, buffer: np.ndarray) -> np.ndarray:
        """Owned copy of block ``index``."""
        return self.map(index, buffer).copy()

    def pack(self, *values: np.ndarray) -> np.ndarray:
        """Allocate a new packed vector holding ``values`` in block order."""
        if len(values) != len(self.blocks):
            raise DimensionMismatchError(
                f"Expected {len(self.blocks)} blocks, got {len(values)}")

        buffer = np.empty(self.packed_size, dtype=np.float64)
        for index, (value, block) in enumerate(zip(values, self.blocks)):
            value = np.asarray(value, dtype=np.float64)
            if value.shape != block.shape:
                raise DimensionMismatchError(
                    f"Block {index} has shape {value.shape}, expected {block.shape}")
            self.map(index, buffer)[...] = value
        return buffer

    def unpack(self, buffer: np.ndarray) -> List[np.ndarray]:
        """Owned copies of every block, in declaration order."""
        return [self.copy(index, buffer) for index in range(len(self.blocks))]


def tuple_metadata(*blocks: np.ndarray) -> TupleMetadata:
    """Build the offset table from example values of each block."""
    return TupleMetadata([np.shape(block) for block in blocks])
