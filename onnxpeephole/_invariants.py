# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Structural invariants the peephole passes must preserve."""

from __future__ import annotations

__all__ = [
    "InvariantError",
    "check_graph_invariants",
]

import onnx_ir as ir


class InvariantError(ir.passes.InvariantError):
    """Raised when a graph or a pass contract is violated.

    These errors point at a bug in an earlier pipeline stage or in a pass and
    are never recovered from.
    """


def _check_use_lists(graph_like: ir.Graph | ir.Function) -> str | None:
    for node in graph_like:
        for i, value in enumerate(node.inputs):
            if value is None:
                continue
            if (node, i) not in set(value.uses()):
                return f"Input {i} of {node!r} is not recorded as a use of {value!r}"
        for output in node.outputs:
            for user, index in output.uses():
                if index >= len(user.inputs) or user.inputs[index] is not output:
                    return f"Stale use ({user!r}, {index}) recorded on {output!r}"
    return None


def _check_topological_order(graph_like: ir.Graph | ir.Function) -> str | None:
    visited: set[ir.Node] = set()
    for node in graph_like:
        for value in node.inputs:
            if value is None:
                continue
            producer = value.producer()
            if producer is None or producer.graph is not node.graph:
                # Graph inputs, initializers and values from an outer scope
                continue
            if producer not in visited:
                return f"{node!r} consumes {value!r} before it is produced"
        visited.add(node)
    return None


def check_graph_invariants(graph_like: ir.Graph | ir.Function) -> None:
    """Check that use-lists mirror node inputs and that nodes are topologically sorted.

    Raises:
        InvariantError: If any invariant does not hold.
    """
    message = _check_use_lists(graph_like) or _check_topological_order(graph_like)
    if message is not None:
        raise InvariantError(message)
