# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Eliminate packed sequences before export.

PyTorch has a packed and a padded representation of variable length
sequences, while ONNX recurrent operators only understand the padded one. Using

    RNN(PackPadded(x, lengths)) == PackPadded(RNN(x), lengths)

the packing operation is pushed past the recurrent operator, after which it
meets its inverse PadPacked and both can be removed. If the graph does not pair
the two operations, export fails downstream.
"""

from __future__ import annotations

__all__ = [
    "PushPackingPastRnnPass",
    "RemoveNopPackingPass",
    "push_packing_past_rnn",
    "remove_nop_packing",
]

import logging
from typing import Iterable

import onnx_ir as ir

from onnxpeephole import _ir_utils
from onnxpeephole.passes import _base

logger = logging.getLogger(__name__)


def _used_before(
    graph_like: ir.Graph | ir.Function, users: Iterable[ir.Node], node: ir.Node
) -> bool:
    """Return True if any of ``users`` appears before ``node`` in the graph."""
    users = set(users)
    if not users:
        return False
    for current in graph_like:
        if current is node:
            return False
        if current in users:
            return True
    return False


def push_packing_past_rnn(graph_like: ir.Graph | ir.Function) -> int:
    """Rewrite ``RNN(PackPadded(x, lengths))`` as ``PackPadded(RNN(x), lengths)``."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_prim_op(node, "PackPadded"):
            continue
        if len(node.inputs) < 2 or len(node.outputs) < 2:
            continue
        packed, packed_lengths = node.outputs[0], node.outputs[1]
        uses = tuple(packed.uses())
        # Only the single consumer case is handled
        if len(uses) != 1:
            continue
        rnn = uses[0][0]
        if not _ir_utils.is_rnn(rnn):
            continue
        graph = _ir_utils.owning_graph(graph_like)
        if rnn.graph is not graph:
            logger.debug("Not pushing %s past %s: the RNN is in a subgraph", node.name, rnn.name)
            continue
        data, lengths = node.inputs[0], node.inputs[1]
        if data is None or lengths is None:
            continue
        rnn_output = rnn.outputs[0]
        if _ir_utils.has_graph_output((packed, packed_lengths, rnn_output)):
            logger.debug("Not pushing %s past %s: a graph output is involved", node.name, rnn.name)
            continue
        other_length_users = [user for user, _ in packed_lengths.uses() if user is not rnn]
        if any(user.graph is not graph for user in other_length_users):
            logger.debug(
                "Not pushing %s past %s: its lengths are read in a subgraph", node.name, rnn.name
            )
            continue
        if _used_before(graph_like, other_length_users, rnn):
            logger.debug(
                "Not pushing %s past %s: its lengths are read before the RNN", node.name, rnn.name
            )
            continue

        # Remove the packing in front of the RNN
        ir.convenience.replace_all_uses_with(packed, data)
        # Stacked RNNs all read the same lengths; only this RNN sees padded data now
        for user, index in tuple(packed_lengths.uses()):
            if user is rnn:
                user.replace_input_with(index, lengths)

        rnn_output_uses = tuple(rnn_output.uses())
        length_uses = tuple(packed_lengths.uses())
        new_pack = ir.node(
            "PackPadded",
            inputs=[rnn_output, lengths],
            domain=_ir_utils.PRIM_DOMAIN,
            num_outputs=2,
        )
        graph_like.insert_after(rnn, new_pack)
        for user, index in rnn_output_uses:
            user.replace_input_with(index, new_pack.outputs[0])
        for user, index in length_uses:
            user.replace_input_with(index, new_pack.outputs[1])

        graph_like.remove(node, safe=True)
        logger.debug("Pushed %s past %s as %s", node.name, rnn.name, new_pack.name)
        count += 1
    return count


def remove_nop_packing(graph_like: ir.Graph | ir.Function) -> int:
    """Cancel ``PadPacked`` nodes that directly unpack a ``PackPadded`` of the same pair."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_prim_op(node, "PadPacked"):
            continue
        if len(node.inputs) < 2 or len(node.outputs) < 2:
            continue
        data, lengths = node.inputs[0], node.inputs[1]
        if data is None or lengths is None:
            continue
        pack = data.producer()
        if not _ir_utils.is_prim_op(pack, "PackPadded"):
            continue
        assert pack is not None
        # Both inputs must come from the same slots of the same PackPadded
        if len(pack.outputs) < 2 or len(pack.inputs) < 2:
            continue
        if pack.outputs[0] is not data or pack.outputs[1] is not lengths:
            continue
        if pack.inputs[0] is None or pack.inputs[1] is None:
            continue
        if _ir_utils.has_graph_output(node.outputs):
            logger.debug("Keeping %s: its outputs are graph outputs", node.name)
            continue

        ir.convenience.replace_all_uses_with(node.outputs[0], pack.inputs[0])
        ir.convenience.replace_all_uses_with(node.outputs[1], pack.inputs[1])
        # Detaches the inputs before removing the node
        graph_like.remove(node, safe=True)
        logger.debug("Cancelled %s against %s", node.name, pack.name)
        _ir_utils.remove_if_dead(graph_like, pack)
        count += 1
    return count


class PushPackingPastRnnPass(_base.PeepholePass):
    """Rewrite ``RNN(PackPadded(x, lengths))`` as ``PackPadded(RNN(x), lengths)``."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return push_packing_past_rnn(graph_like)


class RemoveNopPackingPass(_base.PeepholePass):
    """Cancel ``PadPacked(PackPadded(x, lengths))`` pairs."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return remove_nop_packing(graph_like)
