# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""ONNX peephole optimizations for traced graphs, built on onnx_ir."""

__all__ = [
    "BroadcastFusion",
    "InvariantError",
    "PeepholeOptimizePass",
    "check_graph_invariants",
    "compose_permutations",
    "fusible_broadcast_axis",
    "is_identity_permutation",
    "passes",
    "peephole_optimize",
    "peephole_optimize_graph",
]

from onnxpeephole import passes
from onnxpeephole._invariants import InvariantError, check_graph_invariants
from onnxpeephole._peephole import (
    PeepholeOptimizePass,
    peephole_optimize,
    peephole_optimize_graph,
)
from onnxpeephole._shape_algebra import (
    BroadcastFusion,
    compose_permutations,
    fusible_broadcast_axis,
    is_identity_permutation,
)
