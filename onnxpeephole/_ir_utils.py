# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Operator vocabulary and small IR helpers shared by the peephole passes."""

from __future__ import annotations

import logging
from typing import Sequence

import onnx_ir as ir

logger = logging.getLogger(__name__)

ONNX_DOMAIN = ""
# Namespaces of the tracer's own operators, which the exporter must rewrite away
PRIM_DOMAIN = "prim"
ATEN_DOMAIN = "aten"

# Operators that accept a ``broadcast`` flag applying to their last input.
# This is only left-side extension, not numpy broadcasting.
BROADCASTING_OPS = frozenset({"Add", "Div", "Gemm", "Mul", "Pow", "Sub"})

RNN_OPS = frozenset({"GRU", "LSTM", "RNN"})


def is_onnx_domain(domain: str) -> bool:
    return domain in (ONNX_DOMAIN, "ai.onnx")


def is_onnx_op(node: ir.Node | None, op_type: str) -> bool:
    return node is not None and node.op_type == op_type and is_onnx_domain(node.domain)


def is_prim_op(node: ir.Node | None, op_type: str) -> bool:
    return node is not None and node.op_type == op_type and node.domain == PRIM_DOMAIN


def is_aten_op(node: ir.Node | None, op_type: str) -> bool:
    return node is not None and node.op_type == op_type and node.domain == ATEN_DOMAIN


def is_rnn(node: ir.Node | None) -> bool:
    return node is not None and node.op_type in RNN_OPS and is_onnx_domain(node.domain)


def is_broadcasting(node: ir.Node) -> bool:
    return node.op_type in BROADCASTING_OPS and is_onnx_domain(node.domain)


def static_dims(value: ir.Value | None) -> list[int] | None:
    """Return the dimensions of ``value`` if its shape is fully known, otherwise None."""
    if value is None or value.shape is None:
        return None
    dims = list(value.shape)
    if not all(isinstance(dim, int) for dim in dims):
        return None
    return dims


def transpose_perm(node: ir.Node) -> list[int] | None:
    """Return the permutation of a Transpose node.

    Without a ``perm`` attribute ONNX reverses the axes, which can only be
    spelled out when the rank of the input is known.
    """
    perm = node.attributes.get_ints("perm")
    if perm is not None:
        return list(perm)
    data = node.inputs[0] if node.inputs else None
    if data is None or data.shape is None:
        return None
    return list(reversed(range(data.shape.rank())))


def owning_graph(graph_like: ir.Graph | ir.Function) -> ir.Graph:
    """Return the graph holding the nodes of ``graph_like``."""
    return graph_like.graph if isinstance(graph_like, ir.Function) else graph_like


def has_graph_output(values: Sequence[ir.Value]) -> bool:
    return any(value.is_graph_output() for value in values)


def is_dead(node: ir.Node) -> bool:
    """Return True if no output of ``node`` is used or exposed as a graph output."""
    return not any(output.uses() or output.is_graph_output() for output in node.outputs)


def remove_if_dead(graph_like: ir.Graph | ir.Function, node: ir.Node | None) -> bool:
    """Remove ``node`` from ``graph_like`` when nothing reads its outputs any more."""
    if node is None or node.graph is not owning_graph(graph_like) or not is_dead(node):
        return False
    graph_like.remove(node, safe=True)
    logger.debug("Removed unused node %s", node.name)
    return True
