# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
from __future__ import annotations

import unittest

import numpy as np
import onnx
import onnx_ir as ir

import onnxpeephole


def _value(name: str, shape: list[int] | None = None) -> ir.Value:
    return ir.Value(
        name=name,
        type=ir.TensorType(ir.DataType.FLOAT),
        shape=ir.Shape(shape) if shape is not None else None,
    )


def _structure(graph: ir.Graph) -> list[tuple]:
    """Summarize a graph by node identity, wiring and attributes."""
    return [
        (
            node,
            node.op_type,
            node.domain,
            tuple(node.inputs),
            tuple((name, repr(attr.value)) for name, attr in node.attributes.items()),
        )
        for node in graph
    ]


def _traced_lstm_graph() -> ir.Graph:
    """A packed, single-layer LSTM with default states followed by a Gemm and a bias expand."""
    x = _value("x")
    lengths = ir.Value(name="lengths", type=ir.TensorType(ir.DataType.INT64))
    w, r, weight = _value("w"), _value("r"), _value("weight", [4, 8])
    bias = _value("bias", [4])
    h0 = ir.node(
        "Constant", inputs=[], attributes={"value": ir.tensor(np.zeros((1, 3, 8), np.float32))}
    )
    c0 = ir.node(
        "Constant", inputs=[], attributes={"value": ir.tensor(np.zeros((1, 3, 8), np.float32))}
    )
    pack = ir.node("PackPadded", inputs=[x, lengths], domain="prim", num_outputs=2)
    lstm = ir.node(
        "LSTM",
        inputs=[pack.outputs[0], w, r, None, pack.outputs[1], h0.outputs[0], c0.outputs[0]],
        attributes={"hidden_size": 8},
        num_outputs=3,
    )
    unpack = ir.node(
        "PadPacked", inputs=[lstm.outputs[0], pack.outputs[1]], domain="prim", num_outputs=2
    )
    lengths_out = ir.node("Identity", inputs=[unpack.outputs[1]])
    last = ir.node("Squeeze", inputs=[unpack.outputs[0]], attributes={"axes": [1]})
    last.outputs[0].shape = ir.Shape([3, 8])
    transpose_weight = ir.node("Transpose", inputs=[weight], attributes={"perm": [1, 0]})
    expand = ir.node("expand", inputs=[bias], domain="aten")
    expand.outputs[0].shape = ir.Shape([3, 4])
    gemm = ir.node(
        "Gemm", inputs=[last.outputs[0], transpose_weight.outputs[0], expand.outputs[0]]
    )
    return ir.Graph(
        inputs=[x, lengths, w, r, weight, bias],
        outputs=[gemm.outputs[0], lengths_out.outputs[0]],
        nodes=[h0, c0, pack, lstm, unpack, lengths_out, last, transpose_weight, expand, gemm],
        opset_imports={"": 9},
        name="traced_lstm",
    )


class PeepholeOptimizeGraphTest(unittest.TestCase):
    def test_all_rewrites_apply_to_traced_lstm(self):
        graph = _traced_lstm_graph()
        x, lengths, _, _, weight, bias = graph.inputs

        onnxpeephole.peephole_optimize_graph(graph, check_invariants=True)

        self.assertEqual([node for node in graph if node.domain in ("prim", "aten")], [])
        op_types = [node.op_type for node in graph]
        self.assertNotIn("Transpose", op_types)
        self.assertEqual(op_types.count("ConstantFill"), 2)
        self.assertEqual(op_types.count("Constant"), 6)

        lstm = next(node for node in graph if node.op_type == "LSTM")
        self.assertIs(lstm.inputs[0], x)
        self.assertIs(lstm.inputs[4], lengths)
        self.assertEqual(lstm.inputs[5].producer().op_type, "ConstantFill")
        self.assertEqual(lstm.inputs[6].producer().op_type, "ConstantFill")
        # The unpacked lengths are read straight from the input
        lengths_consumer = next(node for node in graph if node.op_type == "Identity")
        self.assertIs(lengths_consumer.inputs[0], lengths)

        gemm = next(node for node in graph if node.op_type == "Gemm")
        self.assertIs(gemm.inputs[1], weight)
        self.assertIs(gemm.inputs[2], bias)
        self.assertEqual(gemm.attributes.get_int("transB"), 1)
        self.assertEqual(gemm.attributes.get_int("broadcast"), 1)
        self.assertNotIn("axis", gemm.attributes)

    def test_consecutive_transposes_into_gemm_cancel_out(self):
        a = _value("a", [3, 2])
        b = _value("b", [3, 4])
        t1 = ir.node("Transpose", inputs=[a], attributes={"perm": [1, 0]})
        t2 = ir.node("Transpose", inputs=t1.outputs, attributes={"perm": [1, 0]})
        gemm = ir.node("Gemm", inputs=[t2.outputs[0], b])
        graph = ir.Graph(
            inputs=[a, b], outputs=gemm.outputs, nodes=[t1, t2, gemm], name="test_graph"
        )

        onnxpeephole.peephole_optimize_graph(graph)

        # Fusion yields an identity transpose, which is eliminated before Gemm fusion runs
        self.assertEqual(tuple(graph), (gemm,))
        self.assertIs(gemm.inputs[0], a)
        self.assertNotIn("transA", gemm.attributes)

    def test_second_run_is_a_no_op(self):
        graph = _traced_lstm_graph()
        onnxpeephole.peephole_optimize_graph(graph)
        once = _structure(graph)

        onnxpeephole.peephole_optimize_graph(graph)

        self.assertEqual(_structure(graph), once)

    def test_clean_graph_is_unchanged(self):
        x = _value("x", [2, 3])
        relu = ir.node("Relu", inputs=[x])
        transpose = ir.node("Transpose", inputs=relu.outputs, attributes={"perm": [1, 0]})
        graph = ir.Graph(
            inputs=[x], outputs=transpose.outputs, nodes=[relu, transpose], name="test_graph"
        )
        before = _structure(graph)

        onnxpeephole.peephole_optimize_graph(graph)

        self.assertEqual(_structure(graph), before)


class PeepholeOptimizeTest(unittest.TestCase):
    def _nop_transpose_graph(self, name: str = "test_graph") -> ir.Graph:
        x = _value("x", [2, 3])
        transpose = ir.node("Transpose", inputs=[x], attributes={"perm": [0, 1]})
        relu = ir.node("Relu", inputs=transpose.outputs)
        return ir.Graph(
            inputs=[x],
            outputs=relu.outputs,
            nodes=[transpose, relu],
            opset_imports={"": 9},
            name=name,
        )

    def test_ir_model_is_optimized_in_place(self):
        model = ir.Model(self._nop_transpose_graph(), ir_version=7)

        result = onnxpeephole.peephole_optimize(model, check_invariants=True)

        self.assertIs(result, model)
        self.assertEqual([node.op_type for node in model.graph], ["Relu"])

    def test_model_proto_is_optimized(self):
        model_proto = ir.serde.serialize_model(
            ir.Model(self._nop_transpose_graph(), ir_version=7)
        )

        optimized = onnxpeephole.peephole_optimize(model_proto)

        self.assertIsInstance(optimized, onnx.ModelProto)
        self.assertEqual([node.op_type for node in optimized.graph.node], ["Relu"])
        self.assertEqual(optimized.graph.node[0].input[0], "x")

    def test_functions_are_processed_unless_disabled(self):
        for process_functions, expected in ((True, ["Relu"]), (False, ["Transpose", "Relu"])):
            with self.subTest(process_functions=process_functions):
                function = ir.Function(
                    domain="test_domain",
                    name="test_function",
                    graph=self._nop_transpose_graph("test_function"),
                    attributes=[],
                )
                model = ir.Model(
                    ir.Graph(inputs=[], outputs=[], nodes=[], name="main_graph"),
                    ir_version=7,
                    functions=[function],
                )

                onnxpeephole.peephole_optimize(model, process_functions=process_functions)

                self.assertEqual([node.op_type for node in function], expected)

    def test_pass_runs_every_rewrite_in_order(self):
        optimizer_pass = onnxpeephole.PeepholeOptimizePass()
        self.assertEqual(
            [type(pass_).__name__ for pass_ in optimizer_pass.passes],
            [
                "PushPackingPastRnnPass",
                "RemoveNopPackingPass",
                "FixDefaultRnnHiddenStatePass",
                "FixDefaultLstmCellStatePass",
                "FuseBroadcastPass",
                "FuseConsecutiveTransposesPass",
                "EliminateNopTransposePass",
                "FuseTransposeIntoGemmPass",
            ],
        )
        self.assertTrue(optimizer_pass.in_place)

    def test_pass_reports_no_modification_on_clean_model(self):
        x = _value("x", [2, 3])
        relu = ir.node("Relu", inputs=[x])
        model = ir.Model(
            ir.Graph(inputs=[x], outputs=relu.outputs, nodes=[relu], name="test_graph"),
            ir_version=7,
        )

        result = onnxpeephole.PeepholeOptimizePass()(model)

        self.assertFalse(result.modified)


if __name__ == "__main__":
    unittest.main()
