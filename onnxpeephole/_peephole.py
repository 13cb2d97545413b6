# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""ONNX-specific peephole optimizations applied right before export.

The rewrites are:

- Pushing packed sequences past recurrent operators and cancelling them
  against their inverse
- Making default initial states of recurrent operators batch-size agnostic
- Fusing ``aten::expand`` into the ``broadcast`` flag of its consumer
- Fusing consecutive transposes
- Eliminating no-op transposes
- Fusing transposes into Gemm

Each rewrite runs exactly once, in this order. A later rewrite can expose new
opportunities for an earlier one, which are not revisited.
"""

from __future__ import annotations

__all__ = [
    "PeepholeOptimizePass",
    "peephole_optimize",
    "peephole_optimize_graph",
]

import logging
from typing import TypeVar

import onnx
import onnx_ir as ir

from onnxpeephole import _invariants
from onnxpeephole.passes import (
    EliminateNopTransposePass,
    FixDefaultLstmCellStatePass,
    FixDefaultRnnHiddenStatePass,
    FuseBroadcastPass,
    FuseConsecutiveTransposesPass,
    FuseTransposeIntoGemmPass,
    PeepholePass,
    PushPackingPastRnnPass,
    RemoveNopPackingPass,
)

logger = logging.getLogger(__name__)

_ModelProtoOrIr = TypeVar("_ModelProtoOrIr", onnx.ModelProto, ir.Model)

# Later passes rely on the earlier ones having run
_PASS_TYPES: tuple[type[PeepholePass], ...] = (
    PushPackingPastRnnPass,
    RemoveNopPackingPass,
    FixDefaultRnnHiddenStatePass,
    FixDefaultLstmCellStatePass,
    FuseBroadcastPass,
    FuseConsecutiveTransposesPass,
    EliminateNopTransposePass,
    FuseTransposeIntoGemmPass,
)


def peephole_optimize_graph(
    graph_like: ir.Graph | ir.Function, *, check_invariants: bool = False
) -> None:
    """Apply every peephole rewrite once, in order, to a single graph in place.

    Args:
        graph_like: The graph or function to rewrite.
        check_invariants: Verify use-lists and topological order after each rewrite.
    """
    for pass_type in _PASS_TYPES:
        count = pass_type().rewrite(graph_like)
        logger.debug("%s: %s rewrites", pass_type.__name__, count)
        if check_invariants:
            _invariants.check_graph_invariants(graph_like)


class PeepholeOptimizePass(ir.passes.Sequential):
    """Run all peephole passes once, in order.

    Attributes:
        process_functions: Whether to also rewrite the functions of the model.
        check_invariants: Whether to verify graph invariants after each pass.
    """

    def __init__(self, process_functions: bool = True, check_invariants: bool = False):
        super().__init__(
            *(
                pass_type(
                    process_functions=process_functions, check_invariants=check_invariants
                )
                for pass_type in _PASS_TYPES
            )
        )
        self.process_functions = process_functions
        self.check_invariants = check_invariants


def peephole_optimize(
    model: _ModelProtoOrIr,
    *,
    process_functions: bool = True,
    check_invariants: bool = False,
) -> _ModelProtoOrIr:
    """Applies the ONNX peephole optimizations to a model.

    Args:
        model: The model to be optimized.
        process_functions: If True, model-local functions are rewritten as well.
        check_invariants: If True, graph invariants are verified after each pass.

    Returns:
        The optimized model. If the input was a ModelProto, the output will be a
        new ModelProto. If the input was an ir.Model, it is optimized in place
        and returned.
    """
    optimizer_pass = PeepholeOptimizePass(
        process_functions=process_functions, check_invariants=check_invariants
    )
    if isinstance(model, ir.Model):
        result = optimizer_pass(model)
        assert result.model is model
        return model

    assert isinstance(model, onnx.ModelProto)
    model_ir = ir.serde.deserialize_model(model)
    optimizer_pass(model_ir)
    # Move the model back to the proto
    return ir.serde.serialize_model(model_ir)
