# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Reasoning about axis permutations and restricted broadcasts."""

from __future__ import annotations

__all__ = [
    "BroadcastFusion",
    "compose_permutations",
    "fusible_broadcast_axis",
    "is_identity_permutation",
]

import enum
from typing import Sequence

from onnxpeephole._invariants import InvariantError


def is_identity_permutation(perm: Sequence[int]) -> bool:
    """Return True if transposing by ``perm`` leaves the tensor unchanged."""
    return all(axis == i for i, axis in enumerate(perm))


def compose_permutations(first: Sequence[int], second: Sequence[int]) -> list[int]:
    """Return the permutation equivalent to transposing by ``first`` and then by ``second``.

    Follows ONNX ``Transpose`` semantics, where output axis ``i`` is input axis
    ``perm[i]``. Transposing by ``first`` then ``second`` reads axis
    ``first[second[i]]`` of the original tensor at output axis ``i``.

    Raises:
        InvariantError: If the permutations differ in length or contain an
            out-of-range axis.
    """
    if len(first) != len(second):
        raise InvariantError(
            f"Cannot compose permutations of different lengths: {list(first)} and {list(second)}"
        )
    rank = len(first)
    for axis in (*first, *second):
        if not 0 <= axis < rank:
            raise InvariantError(
                f"Axis {axis} is out of range for a permutation of rank {rank}"
            )
    return [first[axis] for axis in second]


class BroadcastFusion(enum.Enum):
    """How an expansion can be folded into a broadcasting operator."""

    NOT_FUSIBLE = "not_fusible"
    # Right-aligned broadcast, no axis attribute needed
    TRAILING = "trailing"
    # Left-aligned broadcast, emitted with axis=0
    LEADING = "leading"

    @property
    def fusible(self) -> bool:
        return self is not BroadcastFusion.NOT_FUSIBLE

    @property
    def axis(self) -> int | None:
        return 0 if self is BroadcastFusion.LEADING else None


def fusible_broadcast_axis(
    from_shape: Sequence[int], to_shape: Sequence[int]
) -> BroadcastFusion:
    """Decide whether expanding ``from_shape`` to ``to_shape`` is a single restricted broadcast.

    Leading and trailing dimensions of size one in ``from_shape`` are ignored,
    as they broadcast trivially. The remaining dimensions must match the end of
    ``to_shape`` (trailing broadcast) or, failing that, its start (leading
    broadcast, ``axis=0``).

    This is Caffe2-style broadcasting, not numpy broadcasting: a size one
    dimension in the middle of ``from_shape`` is never expanded.
    """
    if len(from_shape) > len(to_shape):
        return BroadcastFusion.NOT_FUSIBLE

    start = 0
    end = len(from_shape) - 1
    while start < len(from_shape) and from_shape[start] == 1:
        start += 1
    while end > start and from_shape[end] == 1:
        end -= 1

    f = end
    t = len(to_shape) - 1
    trailing = True
    while f >= start and t >= 0:
        if from_shape[f] != to_shape[t]:
            trailing = False
            break
        f -= 1
        t -= 1
    # When to_shape has ones where from_shape does (e.g. [1, 1, 768] -> [5, 1, 768])
    # the walk ends below start rather than on it.
    if trailing and f <= start:
        return BroadcastFusion.TRAILING

    f = start
    t = 0
    leading = True
    while f <= end and t < len(to_shape):
        if from_shape[f] != to_shape[t]:
            leading = False
            break
        f += 1
        t += 1
    if leading and f >= end:
        return BroadcastFusion.LEADING

    return BroadcastFusion.NOT_FUSIBLE
