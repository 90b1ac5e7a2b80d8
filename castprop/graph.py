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

"""Mutable dataflow graph used by the cast propagation pass.

The graph owns every node and value. Nodes live in an index-stable arena: an index is assigned
once and never reused, so a removed node simply stops resolving. Other components only hold node
indices and value names and resolve them through the graph at the time of use.

Producer and consumer maps follow the node input/output lists automatically. Edges
``(src, dst, src_slot, dst_slot)`` are bookkept explicitly, mirroring the graph API of the
runtimes this pass targets: the caller adds and removes them while rewiring.

``Graph.from_onnx`` and ``Graph.to_onnx`` bridge the arena to ``onnx.ModelProto``.
"""

from collections.abc import Iterable
from copy import deepcopy
from dataclasses import dataclass, field
from typing import NamedTuple

import onnx
import onnx_graphsurgeon as gs
from onnx import TensorProto, helper

from castprop.logging_config import logger


@dataclass
class Value:
    """A tensor placeholder. The empty name stands for an absent optional input or output."""

    name: str
    elem_type: int = TensorProto.UNDEFINED

    @property
    def exists(self) -> bool:
        return bool(self.name)


@dataclass
class Node:
    """An operator instance.

    ``inputs`` and ``outputs`` hold value names. Mutate them only through :class:`Graph` so the
    producer and consumer maps stay consistent.
    """

    index: int
    name: str
    op_type: str
    inputs: list[str]
    outputs: list[str]
    attrs: dict[str, onnx.AttributeProto] = field(default_factory=dict)
    domain: str = ""


class Edge(NamedTuple):
    src: int
    dst: int
    src_slot: int
    dst_slot: int


class Graph:
    """Index-stable arena of nodes and values with producer/consumer bookkeeping."""

    def __init__(self, name: str = "graph") -> None:
        """Initialize an empty graph.

        Args:
            name: Graph name, used when exporting to ONNX.
        """
        self.name = name
        self.inputs: list[str] = []
        self.initializers: dict[str, onnx.TensorProto] = {}
        self.outputs: list[str] = []
        # Names read from inside subgraph attributes (If/Loop/Scan bodies)
        self.outer_scope_refs: set[str] = set()

        self._nodes: dict[int, Node] = {}
        self._values: dict[str, Value] = {}
        self._producers: dict[str, int] = {}
        self._consumers: dict[str, list[int]] = {}
        self._edges: set[Edge] = set()
        self._node_names: set[str] = set()
        self._next_index = 0
        self._name_counter = 0
        self._template: onnx.ModelProto | None = None

    # ----------------------------------------------------------------------------------------------
    # Values
    # ----------------------------------------------------------------------------------------------
    def has_value(self, name: str) -> bool:
        return name in self._values

    def value(self, name: str) -> Value:
        """Return the value called ``name``. The empty name resolves to an absent value."""
        if not name:
            return Value("")
        return self._values[name]

    def get_or_create_value(self, name: str, elem_type: int = TensorProto.UNDEFINED) -> Value:
        """Fetch a value by name, creating it with ``elem_type`` if it does not exist yet."""
        if not name:
            return Value("")
        if name not in self._values:
            self._values[name] = Value(name, elem_type)
        return self._values[name]

    def generate_value_name(self, hint: str) -> str:
        """Generate a value name derived from ``hint`` that is not used in the graph."""
        while True:
            self._name_counter += 1
            name = f"{hint}_{self._name_counter}"
            if name not in self._values and name not in self.initializers:
                return name

    def generate_node_name(self, hint: str) -> str:
        """Generate a node name derived from ``hint`` that is not used in the graph."""
        while True:
            self._name_counter += 1
            name = f"{hint}_{self._name_counter}"
            if name not in self._node_names:
                return name

    # ----------------------------------------------------------------------------------------------
    # Nodes
    # ----------------------------------------------------------------------------------------------
    def add_node(
        self,
        name: str,
        op_type: str,
        inputs: Iterable[str],
        outputs: Iterable[str],
        attrs: dict[str, onnx.AttributeProto] | None = None,
        domain: str = "",
    ) -> Node:
        """Create a node and register it as producer of its outputs and consumer of its inputs.

        Edges are not created; wire them with :meth:`add_edge`.

        Raises:
            ValueError: If the name is taken or an output already has a producer.
        """
        inputs, outputs = list(inputs), list(outputs)
        if name in self._node_names:
            raise ValueError(f"Node name {name} is already used in the graph")
        for out in outputs:
            if out and out in self._producers:
                raise ValueError(
                    f"Value {out} is already produced by node "
                    f"{self._nodes[self._producers[out]].name}"
                )

        node = Node(self._next_index, name, op_type, inputs, outputs, dict(attrs or {}), domain)
        self._next_index += 1
        self._nodes[node.index] = node
        self._node_names.add(name)

        for inp in inputs:
            if inp:
                self.get_or_create_value(inp)
                self._add_consumer(inp, node.index)
        for out in outputs:
            if out:
                self.get_or_create_value(out)
                self._producers[out] = node.index
        return node

    def remove_node(self, index: int) -> None:
        """Remove a node together with all of its input and output edges."""
        node = self._nodes.pop(index)
        self._node_names.discard(node.name)
        self._edges = {e for e in self._edges if e.src != index and e.dst != index}
        for inp in set(node.inputs):
            if inp:
                self._consumers[inp].remove(index)
        for out in node.outputs:
            if out and self._producers.get(out) == index:
                del self._producers[out]

    def node(self, index: int) -> Node:
        return self._nodes[index]

    def get_node(self, index: int) -> Node | None:
        """Return the node at ``index``, or None if it has been removed."""
        return self._nodes.get(index)

    @property
    def nodes(self) -> list[Node]:
        return [self._nodes[i] for i in sorted(self._nodes)]

    def node_indices(self) -> list[int]:
        return sorted(self._nodes)

    def find_node(self, name: str) -> Node | None:
        return next((n for n in self._nodes.values() if n.name == name), None)

    def producer(self, name: str) -> Node | None:
        index = self._producers.get(name)
        return None if index is None else self._nodes[index]

    def consumers(self, name: str) -> list[Node]:
        return [self._nodes[i] for i in self._consumers.get(name, [])]

    def set_node_input(self, index: int, slot: int, name: str) -> None:
        """Make input ``slot`` of a node read the value ``name``."""
        node = self._nodes[index]
        old = node.inputs[slot]
        if old == name:
            return
        node.inputs[slot] = name
        if old and old not in node.inputs:
            self._consumers[old].remove(index)
        if name:
            self.get_or_create_value(name)
            self._add_consumer(name, index)

    def set_node_output(self, index: int, slot: int, name: str) -> None:
        """Make output ``slot`` of a node produce the value ``name``.

        Raises:
            ValueError: If ``name`` already has another producer.
        """
        node = self._nodes[index]
        old = node.outputs[slot]
        if old == name:
            return
        if name and self._producers.get(name, index) != index:
            raise ValueError(f"Value {name} already has a producer")
        node.outputs[slot] = name
        if old and old not in node.outputs:
            del self._producers[old]
        if name:
            self.get_or_create_value(name)
            self._producers[name] = index

    def _add_consumer(self, name: str, index: int) -> None:
        consumers = self._consumers.setdefault(name, [])
        if index not in consumers:
            consumers.append(index)

    # ----------------------------------------------------------------------------------------------
    # Edges
    # ----------------------------------------------------------------------------------------------
    def add_edge(self, src: int, dst: int, src_slot: int, dst_slot: int) -> None:
        """Add the edge from output ``src_slot`` of ``src`` to input ``dst_slot`` of ``dst``.

        Raises:
            ValueError: If the slots do not carry the same value.
        """
        src_node, dst_node = self._nodes[src], self._nodes[dst]
        if src_node.outputs[src_slot] != dst_node.inputs[dst_slot]:
            raise ValueError(
                f"Cannot connect {src_node.name}:{src_slot} ({src_node.outputs[src_slot]}) to "
                f"{dst_node.name}:{dst_slot} ({dst_node.inputs[dst_slot]})"
            )
        self._edges.add(Edge(src, dst, src_slot, dst_slot))

    def remove_edge(self, src: int, dst: int, src_slot: int, dst_slot: int) -> bool:
        """Remove an edge. Returns whether the edge was present."""
        edge = Edge(src, dst, src_slot, dst_slot)
        if edge in self._edges:
            self._edges.remove(edge)
            return True
        return False

    def remove_node_output_edges(self, index: int) -> None:
        self._edges = {e for e in self._edges if e.src != index}

    @property
    def edges(self) -> set[Edge]:
        return set(self._edges)

    def input_edges(self, index: int) -> list[Edge]:
        return sorted(e for e in self._edges if e.dst == index)

    def output_edges(self, index: int) -> list[Edge]:
        return sorted(e for e in self._edges if e.src == index)

    # ----------------------------------------------------------------------------------------------
    # Graph IO
    # ----------------------------------------------------------------------------------------------
    def add_input(self, name: str, elem_type: int = TensorProto.FLOAT) -> Value:
        self.inputs.append(name)
        return self.get_or_create_value(name, elem_type)

    def add_initializer(self, tensor: onnx.TensorProto) -> Value:
        self.initializers[tensor.name] = tensor
        return self.get_or_create_value(tensor.name, tensor.data_type)

    def add_output(self, name: str, elem_type: int = TensorProto.UNDEFINED) -> Value:
        self.outputs.append(name)
        value = self.get_or_create_value(name, elem_type)
        if elem_type != TensorProto.UNDEFINED:
            value.elem_type = elem_type
        return value

    def is_input_or_initializer(self, name: str) -> bool:
        return name in self.inputs or name in self.initializers

    def is_output(self, name: str) -> bool:
        return name in self.outputs

    def is_pinned(self, name: str) -> bool:
        """Whether the name and element type of a value must survive every rewrite."""
        return name in self.outputs or name in self.outer_scope_refs

    def output_producers(self) -> list[tuple[str, Node | None]]:
        return [(name, self.producer(name)) for name in self.outputs]

    def count_op_type(self, op_type: str) -> int:
        return sum(1 for n in self._nodes.values() if n.op_type == op_type)

    # ----------------------------------------------------------------------------------------------
    # ONNX bridge
    # ----------------------------------------------------------------------------------------------
    @classmethod
    def from_onnx(cls, model: onnx.ModelProto) -> "Graph":
        """Build a graph from an ONNX model.

        Element types are read from graph inputs, outputs, value_info and initializers. Unnamed
        nodes get generated names. The model is copied and kept as a template for export.

        Args:
            model: ONNX model to import.

        Returns:
            Graph: The imported graph with every producer/consumer edge wired.
        """
        model = deepcopy(model)
        graph = cls(model.graph.name or "graph")
        graph._template = model

        for container in (model.graph.input, model.graph.output, model.graph.value_info):
            for vi in container:
                graph.get_or_create_value(vi.name, vi.type.tensor_type.elem_type)
        for init in model.graph.initializer:
            graph.add_initializer(init)
        graph.inputs = [vi.name for vi in model.graph.input if vi.name not in graph.initializers]
        graph.outputs = [vi.name for vi in model.graph.output]

        graph._node_names = {node.name for node in model.graph.node if node.name}
        for node in model.graph.node:
            name = node.name
            if not name:
                name = graph.generate_node_name(node.op_type)
                logger.debug(f"Naming unnamed {node.op_type} node as {name}")
            else:
                graph._node_names.discard(name)
            graph.add_node(
                name,
                node.op_type,
                node.input,
                node.output,
                {attr.name: attr for attr in node.attribute},
                node.domain,
            )
            graph.outer_scope_refs.update(_get_outer_scope_refs(node))

        for node in graph.nodes:
            for dst_slot, inp in enumerate(node.inputs):
                producer = graph.producer(inp) if inp else None
                if producer is not None:
                    src_slot = producer.outputs.index(inp)
                    graph.add_edge(producer.index, node.index, src_slot, dst_slot)

        logger.debug(
            f"Imported graph {graph.name}: {len(graph._nodes)} nodes, {len(graph._values)} values"
        )
        return graph

    def to_onnx(self) -> onnx.ModelProto:
        """Export the graph to an ONNX model.

        Nodes are sorted topologically with onnx-graphsurgeon. A Cast with several outputs (the
        result of sibling fusion) is lowered to a single-output Cast: readers of the extra outputs
        read the first output instead, and an ``Identity`` keeps the name of every extra output
        that is pinned. Intermediate value_info is dropped since the pass does not retype
        intermediates; run shape inference on the result to repopulate it.

        Returns:
            onnx.ModelProto: The exported model.
        """
        renames: dict[str, str] = {}
        for node in self.nodes:
            if node.op_type == "Cast" and len(node.outputs) > 1:
                for extra in node.outputs[1:]:
                    if extra and not self.is_pinned(extra):
                        renames[extra] = node.outputs[0]

        nodes = []
        for node in self.nodes:
            inputs = [renames.get(inp, inp) for inp in node.inputs]
            outputs = list(node.outputs)
            extra_nodes = []
            if node.op_type == "Cast" and len(outputs) > 1:
                primary = outputs[0]
                extra_nodes = [
                    helper.make_node(
                        "Identity", [primary], [extra], name=f"{node.name}_{extra}_identity"
                    )
                    for extra in outputs[1:]
                    if extra and self.is_pinned(extra)
                ]
                outputs = [primary]

            onnx_node = helper.make_node(
                node.op_type, inputs, outputs, name=node.name, domain=node.domain or None
            )
            onnx_node.attribute.extend(node.attrs.values())
            nodes.append(onnx_node)
            nodes.extend(extra_nodes)

        template = self._template
        template_io = {}
        if template is not None:
            template_io = {vi.name: vi for vi in (*template.graph.input, *template.graph.output)}

        def _make_io(name):
            elem_type = self.value(name).elem_type
            if name in template_io:
                vi = deepcopy(template_io[name])
                if elem_type != TensorProto.UNDEFINED:
                    vi.type.tensor_type.elem_type = elem_type
                return vi
            return helper.make_tensor_value_info(name, elem_type, None)

        graph_inputs = [_make_io(name) for name in self.inputs]
        if template is not None:
            # Keep initializers that the original model also listed as graph inputs
            graph_inputs.extend(
                deepcopy(vi) for vi in template.graph.input if vi.name in self.initializers
            )
        graph_proto = helper.make_graph(
            nodes,
            self.name,
            graph_inputs,
            [_make_io(name) for name in self.outputs],
            initializer=list(self.initializers.values()),
        )

        if template is None:
            model = helper.make_model(graph_proto)
        else:
            model = deepcopy(template)
            model.graph.CopyFrom(graph_proto)

        order = _get_topological_order(model)
        model.graph.ClearField("node")
        model.graph.node.extend(sorted(nodes, key=lambda n: order[n.name]))
        return model


def _get_topological_order(model: onnx.ModelProto) -> dict[str, int]:
    """Position of every node of the main graph once sorted by onnx-graphsurgeon."""
    graph = gs.import_onnx(model)
    graph.toposort()
    return {node.name: i for i, node in enumerate(graph.nodes)}


def _get_outer_scope_refs(node: onnx.NodeProto) -> set[str]:
    """Collect names a node's subgraph attributes read from the enclosing scope."""
    refs = set()
    for attr in node.attribute:
        if attr.type == onnx.AttributeProto.GRAPH:
            refs |= _get_graph_outer_scope_refs(attr.g)
        elif attr.type == onnx.AttributeProto.GRAPHS:
            for subgraph in attr.graphs:
                refs |= _get_graph_outer_scope_refs(subgraph)
    return refs


def _get_graph_outer_scope_refs(graph: onnx.GraphProto) -> set[str]:
    defined = {vi.name for vi in graph.input} | {init.name for init in graph.initializer}
    refs = set()
    for node in graph.node:
        refs |= {inp for inp in node.input if inp and inp not in defined}
        refs |= _get_outer_scope_refs(node) - defined
        defined.update(node.output)
    # Subgraph outputs may forward an outer value untouched
    refs |= {vi.name for vi in graph.output if vi.name not in defined}
    return refs
