# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Fold explicit expansions into the ``broadcast`` flag of the consuming operator.

Backends that do not support strided tensors broadcast more efficiently when
the broadcast is local to the operator, so ``Add(a, expand(b))`` is emitted as
``Add(a, b, broadcast=1)`` whenever the expansion is a restricted broadcast.
"""

from __future__ import annotations

__all__ = ["FuseBroadcastPass", "fuse_broadcast"]

import logging

import onnx_ir as ir

from onnxpeephole import _invariants, _ir_utils, _shape_algebra
from onnxpeephole.passes import _base

logger = logging.getLogger(__name__)


def fuse_broadcast(graph_like: ir.Graph | ir.Function) -> int:
    """Replace an ``aten::expand`` feeding a broadcasting operator with ``broadcast=1``."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_broadcasting(node):
            continue
        # TODO: a node broadcasting some dims could absorb a second
        # expansion of the remaining dims; it does not occur in traced graphs.
        if node.attributes.get_int("broadcast", 0):
            continue
        if "axis" in node.attributes:
            raise _invariants.InvariantError(
                f"{node!r} carries an 'axis' attribute without broadcasting"
            )
        if not node.inputs:
            continue

        input_index = len(node.inputs) - 1
        expanded = node.inputs[input_index]
        if expanded is None:
            continue
        expand = expanded.producer()
        if not _ir_utils.is_aten_op(expand, "expand"):
            continue
        assert expand is not None
        unexpanded = expand.inputs[0] if expand.inputs else None

        # Expansions are always traced, so the pre-expansion shape is normally known
        from_dims = _ir_utils.static_dims(unexpanded)
        to_dims = _ir_utils.static_dims(expanded)
        if from_dims is None or to_dims is None:
            logger.debug("Shape of the expansion feeding %s is not statically known", node.name)
            continue

        fusion = _shape_algebra.fusible_broadcast_axis(from_dims, to_dims)
        if not fusion.fusible:
            continue

        node.replace_input_with(input_index, unexpanded)
        node.attributes["broadcast"] = ir.AttrInt64("broadcast", 1)
        if fusion.axis is not None:
            node.attributes["axis"] = ir.AttrInt64("axis", fusion.axis)
        logger.debug(
            "Fused expand %s %s -> %s into %s (%s)",
            expand.name,
            from_dims,
            to_dims,
            node.name,
            fusion.value,
        )
        _ir_utils.remove_if_dead(graph_like, expand)
        count += 1
    return count


class FuseBroadcastPass(_base.PeepholePass):
    """Replace ``aten::expand`` feeding a broadcasting operator with its ``broadcast`` flag."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return fuse_broadcast(graph_like)
