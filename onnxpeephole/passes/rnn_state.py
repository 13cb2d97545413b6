# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Make default initial states of recurrent operators independent of the batch size.

When no initial state is passed to a PyTorch RNN it is default-initialized by
a new zero tensor, which the tracer records as a Constant of the traced batch
size (behind a Slice for multi-layer RNNs). The constant is replaced by a
ConstantFill whose shape ``[num_directions, batch_size, hidden_size]`` is
computed from the runtime input.
"""

from __future__ import annotations

__all__ = [
    "FixDefaultLstmCellStatePass",
    "FixDefaultRnnHiddenStatePass",
    "fix_default_lstm_cell_state",
    "fix_default_rnn_hidden_state",
    "fix_default_rnn_state",
]

import logging

import numpy as np
import onnx_ir as ir

from onnxpeephole import _ir_utils
from onnxpeephole.passes import _base

logger = logging.getLogger(__name__)

# Input positions on RNN, GRU and LSTM
_INITIAL_H_INDEX = 5
_INITIAL_C_INDEX = 6
# Batch size is dimension 1 of X, which is [seq_length, batch_size, input_size]
_BATCH_AXIS = 1


def _is_default_state(state: ir.Value) -> bool:
    producer = state.producer()
    if _ir_utils.is_onnx_op(producer, "Constant"):
        return True
    if _ir_utils.is_onnx_op(producer, "Slice"):
        assert producer is not None
        sliced = producer.inputs[0] if producer.inputs else None
        return sliced is not None and _ir_utils.is_onnx_op(sliced.producer(), "Constant")
    return False


def _int64(value) -> ir.TensorProtocol:
    return ir.tensor(np.array(value, dtype=np.int64))


def _state_shape_nodes(data: ir.Value, hidden_size: int, num_directions: int) -> list[ir.Node]:
    """Build the nodes computing a zero state of shape ``[num_directions, batch_size, hidden_size]``."""
    shape = ir.node("Shape", inputs=[data])
    batch_axis = ir.node("Constant", inputs=[], attributes={"value": _int64(_BATCH_AXIS)})
    batch_size = ir.node("Gather", inputs=[shape.outputs[0], batch_axis.outputs[0]])
    batch_size_1d = ir.node("Unsqueeze", inputs=batch_size.outputs, attributes={"axes": [0]})
    hidden = ir.node("Constant", inputs=[], attributes={"value": _int64([hidden_size])})
    directions = ir.node("Constant", inputs=[], attributes={"value": _int64(num_directions)})
    directions_1d = ir.node("Unsqueeze", inputs=directions.outputs, attributes={"axes": [0]})
    state_shape = ir.node(
        "Concat",
        inputs=[directions_1d.outputs[0], batch_size_1d.outputs[0], hidden.outputs[0]],
        attributes={"axis": 0},
    )
    fill = ir.node("ConstantFill", inputs=state_shape.outputs, attributes={"input_as_shape": 1})
    return [
        shape,
        batch_axis,
        batch_size,
        batch_size_1d,
        hidden,
        directions,
        directions_1d,
        state_shape,
        fill,
    ]


def fix_default_rnn_state(
    graph_like: ir.Graph | ir.Function, node: ir.Node, input_index: int
) -> bool:
    """Replace a traced default state at ``input_index`` of ``node`` with a dynamically shaped one.

    Returns:
        True if the state was replaced.
    """
    state = node.inputs[input_index]
    data = node.inputs[0]
    if state is None or data is None or not _is_default_state(state):
        return False
    hidden_size = node.attributes.get_int("hidden_size")
    if hidden_size is None:
        logger.debug("Cannot fix the default state of %s without 'hidden_size'", node.name)
        return False
    num_directions = 2 if node.attributes.get_string("direction") == "bidirectional" else 1

    new_nodes = _state_shape_nodes(data, hidden_size, num_directions)
    graph_like.insert_before(node, new_nodes)
    node.replace_input_with(input_index, new_nodes[-1].outputs[0])
    logger.debug(
        "Replaced default state input %d of %s with %s",
        input_index,
        node.name,
        new_nodes[-1].name,
    )

    producer = state.producer()
    sliced = producer.inputs[0] if producer is not None and producer.inputs else None
    if _ir_utils.remove_if_dead(graph_like, producer) and sliced is not None:
        # Multi-layer case: the Constant behind the Slice may now be unused too
        _ir_utils.remove_if_dead(graph_like, sliced.producer())
    return True


def fix_default_rnn_hidden_state(graph_like: ir.Graph | ir.Function) -> int:
    """Replace traced default initial hidden states of RNN, GRU and LSTM nodes."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_rnn(node):
            continue
        # The hidden state is the sixth input of RNN, GRU and LSTM
        if len(node.inputs) <= _INITIAL_H_INDEX:
            continue
        if fix_default_rnn_state(graph_like, node, _INITIAL_H_INDEX):
            count += 1
    return count


def fix_default_lstm_cell_state(graph_like: ir.Graph | ir.Function) -> int:
    """Replace traced default initial cell states of LSTM nodes."""
    count = 0
    for node in graph_like:
        if not _ir_utils.is_onnx_op(node, "LSTM"):
            continue
        # The cell state is the seventh input of LSTM
        if len(node.inputs) <= _INITIAL_C_INDEX:
            continue
        if fix_default_rnn_state(graph_like, node, _INITIAL_C_INDEX):
            count += 1
    return count


class FixDefaultRnnHiddenStatePass(_base.PeepholePass):
    """Derive the shape of default hidden states of RNN, GRU and LSTM from their input."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return fix_default_rnn_hidden_state(graph_like)


class FixDefaultLstmCellStatePass(_base.PeepholePass):
    """Derive the shape of default cell states of LSTM from its input."""

    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        return fix_default_lstm_cell_state(graph_like)
