# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Common base for the single-scan peephole passes."""

from __future__ import annotations

__all__ = ["PeepholePass"]

import abc
import logging

import onnx_ir as ir

from onnxpeephole import _invariants

logger = logging.getLogger(__name__)


class PeepholePass(ir.passes.InPlacePass):
    """Run one graph rewrite over the main graph and, optionally, the model functions.

    Subclasses implement :meth:`rewrite`, a single linear scan over a graph
    that returns the number of rewrites it applied.

    Attributes:
        process_functions: Whether to also rewrite the functions of the model.
        check_invariants: Whether to verify use-lists and topological order
            after the pass.
    """

    def __init__(self, process_functions: bool = True, check_invariants: bool = False):
        super().__init__()
        self.process_functions = process_functions
        self.check_invariants = check_invariants

    @abc.abstractmethod
    def rewrite(self, graph_like: ir.Graph | ir.Function) -> int:
        """Apply the rewrite to ``graph_like`` in place and return the number of matches."""
        ...

    def _graph_likes(self, model: ir.Model) -> list[ir.Graph | ir.Function]:
        graph_likes: list[ir.Graph | ir.Function] = [model.graph]
        if self.process_functions:
            graph_likes.extend(model.functions.values())
        return graph_likes

    def call(self, model: ir.Model) -> ir.passes.PassResult:
        count = 0
        for graph_like in self._graph_likes(model):
            count += self.rewrite(graph_like)
        if count:
            logger.info("%s applied %s rewrites", self.__class__.__name__, count)
        return ir.passes.PassResult(model, modified=bool(count))

    def ensures(self, model: ir.Model) -> None:
        if not self.check_invariants:
            return
        for graph_like in self._graph_likes(model):
            _invariants.check_graph_invariants(graph_like)
