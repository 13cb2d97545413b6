# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Fuse and eliminate Transpose nodes, including folding them into Gemm."""

from __future__ import annotations

__all__ = [
    "EliminateNopTransposePass",
    "FuseConsecutiveTransposesPass",
    "FuseTransposeIntoGemmPass",
    "eliminate_nop_transposes",
    "fuse_consecutive_transposes",
    "fuse_transposes_into_gemm",
]

import logging

import onnx_ir as ir

from onnxpeephole import _ir_utils, _shape_algebra
from onnxpeephole.passes import _base

logger = logging.getLogger(__name__)

_SWAP_PERM = [1, 0]


def fuse_consecutive_transposes(graph_like: ir.Graph | ir.Function) -> int:
    """Replace ``Transpose(Transpose(x))`` with a single Transpose of ``x``."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_onnx_op(node, "Transpose"):
            continue
        inner_output = node.inputs[0]
        if inner_output is None:
            continue
        inner = inner_output.producer()
        if not _ir_utils.is_onnx_op(inner, "Transpose"):
            continue
        assert inner is not None
        if inner.inputs[0] is None:
            continue
        inner_perm = _ir_utils.transpose_perm(inner)
        outer_perm = _ir_utils.transpose_perm(node)
        if inner_perm is None or outer_perm is None:
            continue

        perm = _shape_algebra.compose_permutations(inner_perm, outer_perm)
        node.attributes["perm"] = ir.AttrInt64s("perm", perm)
        node.replace_input_with(0, inner.inputs[0])
        logger.debug(
            "Fused transposes %s and %s into perm=%s", inner.name, node.name, perm
        )
        _ir_utils.remove_if_dead(graph_like, inner)
        count += 1
    return count


def eliminate_nop_transposes(graph_like: ir.Graph | ir.Function) -> int:
    """Remove Transpose nodes whose permutation is the identity."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_onnx_op(node, "Transpose"):
            continue
        perm = _ir_utils.transpose_perm(node)
        if perm is None or not _shape_algebra.is_identity_permutation(perm):
            continue
        if node.inputs[0] is None:
            continue
        if _ir_utils.has_graph_output(node.outputs):
            logger.debug("Keeping no-op transpose %s: its output is a graph output", node.name)
            continue

        ir.convenience.replace_all_uses_with(node.outputs[0], node.inputs[0])
        graph_like.remove(node, safe=True)
        logger.debug("Eliminated no-op transpose %s", node.name)
        count += 1
    return count


def fuse_transposes_into_gemm(graph_like: ir.Graph | ir.Function) -> int:
    """Fold 2-D transposes feeding the A or B input of a Gemm into ``transA``/``transB``."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_onnx_op(node, "Gemm"):
            continue
        for index, flag in ((0, "transA"), (1, "transB")):
            if index >= len(node.inputs) or node.inputs[index] is None:
                continue
            transpose = node.inputs[index].producer()  # type: ignore[union-attr]
            if not _ir_utils.is_onnx_op(transpose, "Transpose"):
                continue
            assert transpose is not None
            if transpose.inputs[0] is None or _ir_utils.transpose_perm(transpose) != _SWAP_PERM:
                continue

            node.replace_input_with(index, transpose.inputs[0])
            transposed = not node.attributes.get_int(flag, 0)
            node.attributes[flag] = ir.AttrInt64(flag, int(transposed))
            logger.debug(
                "Fused transpose %s into %s (%s=%d)", transpose.name, node.name, flag, transposed
            )
            _ir_utils.remove_if_dead(graph_like, transpose)
            count += 1
    return count


class FuseConsecutiveTransposesPass(_base.PeepholePass):
    """Fuse chains of Transpose nodes into one Transpose."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return fuse_consecutive_transposes(graph_like)


class EliminateNopTransposePass(_base.PeepholePass):
    """Remove Transpose nodes that do not reorder any axis."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return eliminate_nop_transposes(graph_like)


class FuseTransposeIntoGemmPass(_base.PeepholePass):
    """Fold ``[1, 0]`` transposes into the transpose flags of Gemm."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return fuse_transposes_into_gemm(graph_like)
