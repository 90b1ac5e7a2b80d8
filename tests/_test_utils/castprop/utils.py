# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import numpy as np
import onnx
import onnx_graphsurgeon as gs
from onnx import TensorProto, helper, numpy_helper

from castprop.graph import Edge, Graph

OPSET = 20
IR_VERSION = 10


def make_cast(name, inp, out, to_type):
    return helper.make_node("Cast", [inp], [out], name=name, to=to_type)


def make_model(nodes, inputs, outputs, initializers=(), name="castprop_test"):
    """Wrap nodes and value infos into a model with a fixed opset and IR version."""
    graph = helper.make_graph(nodes, name, inputs, outputs, initializer=list(initializers))
    return helper.make_model(
        graph,
        producer_name=name,
        ir_version=IR_VERSION,
        opset_imports=[helper.make_opsetid("", OPSET)],
    )


def build_mixed_precision_model():
    """A small FP16 island model as a mixed precision converter would leave it.

    X(fp32) -> Cast16 -> MatMul(W fp16) -> Cast32 -> Softmax -> Cast16 -> Reshape -> Cast32
    -> Cast16 -> Relu -> Y(fp16)
    """
    x = helper.make_tensor_value_info("X", TensorProto.FLOAT, [2, 4])
    y = helper.make_tensor_value_info("Y", TensorProto.FLOAT16, [4, 2])
    weight = numpy_helper.from_array(np.eye(4, dtype=np.float16), name="W")
    shape = numpy_helper.from_array(np.array([4, 2], dtype=np.int64), name="shape")

    nodes = [
        make_cast("cast_in", "X", "x16", TensorProto.FLOAT16),
        helper.make_node("MatMul", ["x16", "W"], ["mm"], name="matmul"),
        make_cast("cast_mm", "mm", "mm32", TensorProto.FLOAT),
        helper.make_node("Softmax", ["mm32"], ["sm"], name="softmax", axis=-1),
        make_cast("cast_sm", "sm", "sm16", TensorProto.FLOAT16),
        helper.make_node("Reshape", ["sm16", "shape"], ["r"], name="reshape"),
        make_cast("cast_r32", "r", "r32", TensorProto.FLOAT),
        make_cast("cast_r16", "r32", "r16", TensorProto.FLOAT16),
        helper.make_node("Relu", ["r16"], ["Y"], name="relu"),
    ]
    return make_model(nodes, [x], [y], [weight, shape], name="mixed_precision")


def get_casts(graph: Graph, to_type=None):
    casts = [n for n in graph.nodes if n.op_type == "Cast"]
    if to_type is not None:
        casts = [n for n in casts if n.attrs["to"].i == to_type]
    return casts


def assert_graph_is_consistent(graph: Graph):
    """Check that producer/consumer maps and edges agree with the node input/output lists."""
    nodes = {node.index: node for node in graph.nodes}
    for edge in graph.edges:
        assert edge.src in nodes, f"Edge {edge} starts at a removed node"
        assert edge.dst in nodes, f"Edge {edge} ends at a removed node"
        src, dst = nodes[edge.src], nodes[edge.dst]
        assert src.outputs[edge.src_slot] == dst.inputs[edge.dst_slot], (
            f"Edge {edge} connects {src.outputs[edge.src_slot]} to {dst.inputs[edge.dst_slot]}"
        )

    expected_edges = set()
    for node in nodes.values():
        for out in node.outputs:
            if out:
                assert graph.producer(out).index == node.index, f"{out} lost its producer"
        for slot, inp in enumerate(node.inputs):
            if not inp:
                continue
            assert node.index in [c.index for c in graph.consumers(inp)], (
                f"{node.name} is not registered as a consumer of {inp}"
            )
            producer = graph.producer(inp)
            if producer is None:
                assert graph.is_input_or_initializer(inp), (
                    f"{inp} read by {node.name} has no producer"
                )
                continue
            expected_edges.add(Edge(producer.index, node.index, producer.outputs.index(inp), slot))

    assert graph.edges == expected_edges
    for name in graph.outputs:
        assert graph.producer(name) is not None or graph.is_input_or_initializer(name), (
            f"Graph output {name} has no producer"
        )


def assert_model_is_valid(model: onnx.ModelProto):
    """Check an exported model with the ONNX checker and make sure every tensor is defined."""
    onnx.checker.check_model(model, full_check=True)
    graph = gs.import_onnx(model)
    graph_inputs = {t.name for t in graph.inputs}
    for node in graph.nodes:
        for tensor in node.inputs:
            if not tensor.name or isinstance(tensor, gs.Constant) or tensor.name in graph_inputs:
                continue
            assert tensor.inputs, f"Tensor '{tensor.name}' read by '{node.name}' has no producer"
    return True


def count_casts(model: onnx.ModelProto):
    return sum(1 for node in model.graph.node if node.op_type == "Cast")
