# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

__all__ = [
    "EliminateNopTransposePass",
    "FixDefaultLstmCellStatePass",
    "FixDefaultRnnHiddenStatePass",
    "FuseBroadcastPass",
    "FuseConsecutiveTransposesPass",
    "FuseTransposeIntoGemmPass",
    "PeepholePass",
    "PushPackingPastRnnPass",
    "RemoveNopPackingPass",
]

from onnxpeephole.passes._base import PeepholePass
from onnxpeephole.passes.broadcast_fusion import FuseBroadcastPass
from onnxpeephole.passes.rnn_state import (
    FixDefaultLstmCellStatePass,
    FixDefaultRnnHiddenStatePass,
)
from onnxpeephole.passes.sequence_packing import (
    PushPackingPastRnnPass,
    RemoveNopPackingPass,
)
from onnxpeephole.passes.transpose_fusion import (
    EliminateNopTransposePass,
    FuseConsecutiveTransposesPass,
    FuseTransposeIntoGemmPass,
)
