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

"""Cast propagation for mixed precision graphs.

An earlier stage converts parts of a graph to low precision and surrounds them with Cast nodes.
This module moves, cancels and merges those Casts so that as few of them as possible remain:

* FP32 Casts are sunk towards their consumers, across transparent ops, and the Casts feeding a
  tolerant op are replaced by a single Cast on its output.
* Back-to-back Casts that undo each other are removed, duplicated ones are collapsed.
* FP16/BF16 Casts are hoisted towards the producers, across transparent and tolerant ops.
* Sibling Casts of the same value to the same type are fused.

The ops executed by the graph never change, only the precision some of them run in.
"""

from onnx import TensorProto

from castprop import utils
from castprop.graph import Graph, Node
from castprop.logging_config import logger
from castprop.op_types import (
    DEFAULT_CAST_POLICY,
    CastPolicy,
    is_cast_op,
    is_data_input,
    is_data_output,
)
from castprop.utils import type_name


class CastPropagationError(Exception):
    """Raised when the graph breaks an invariant the cast propagation pass relies on."""


class CastPropagator:
    """Cast propagation pass.

    The pass only rewires the graph it is given. A single :meth:`apply` call performs one bounded
    sweep; callers re-apply it until it reports no change.

    Public Methods:
        apply: Run one sweep of every rewrite and report whether the graph changed.
    """

    def __init__(self, low_precision_type: str = "fp16", policy: CastPolicy | None = None) -> None:
        """Initialize CastPropagator.

        Args:
            low_precision_type: Precision the low precision Casts convert to ('fp16' or 'bf16').
            policy: Transparent and tolerant op sets. Defaults to ``DEFAULT_CAST_POLICY``.
        """
        if low_precision_type not in utils.LOW_PRECISION_TYPES:
            raise ValueError(f"Unsupported precision type: {low_precision_type}")

        self.low_precision_type = utils.get_precision(low_precision_type)
        self.high_precision_type = utils.get_precision("fp32")
        self.policy = policy or DEFAULT_CAST_POLICY

    def apply(self, graph: Graph) -> bool:
        """Run one sweep of cast propagation.

        Args:
            graph: Graph to rewrite in place.

        Returns:
            bool: Whether the graph was modified.

        Raises:
            CastPropagationError: If the graph is malformed.
        """
        modified = False

        # Propagate FP32 Casts forward
        visited = set()
        for index in graph.node_indices():
            modified |= self.propagate_forwards(graph, index, visited)

        modified |= self.remove_back_to_back_casts(graph)

        # Propagate low precision Casts backward
        if not modified:
            visited = set()
            for _, producer in graph.output_producers():
                if producer is not None:
                    modified |= self.propagate_backwards(graph, producer.index, visited)

        # Fuse sibling Cast nodes with the same input
        for index in graph.node_indices():
            modified |= self.fuse_sibling_casts(graph, index)
        modified |= self.fuse_input_sibling_casts(graph)

        return modified

    # ----------------------------------------------------------------------------------------------
    # Cast helpers
    # ----------------------------------------------------------------------------------------------
    def _is_cast(self, node: Node | None) -> bool:
        return node is not None and is_cast_op(node.op_type) and node.domain in ("", "ai.onnx")

    def _get_cast_to_type(self, node: Node) -> int:
        try:
            return utils.get_cast_to_type(node.attrs)
        except ValueError as e:
            raise CastPropagationError(f"Malformed Cast node {node.name}: {e}") from e

    def _is_cast_to(self, node: Node | None, to_type: int) -> bool:
        return self._is_cast(node) and self._get_cast_to_type(node) == to_type

    def _is_float_type(self, onnx_type: int) -> bool:
        return onnx_type in (self.high_precision_type.onnx_type, self.low_precision_type.onnx_type)

    def _may_be_float(self, graph: Graph, name: str) -> bool:
        elem_type = graph.value(name).elem_type
        return elem_type == TensorProto.UNDEFINED or self._is_float_type(elem_type)

    def _can_remove_casts(self, graph: Graph, casts: list[Node]) -> bool:
        """Check whether a run of Casts can be removed without losing a value someone reads.

        Every output but the trail ones must feed only the next Cast of the run. A pinned trail
        output keeps its name by being renamed onto the producer of the lead input, which requires
        that producer to exist and the lead input to be read by the lead Cast only.
        """
        for cast, next_cast in zip(casts, casts[1:]):
            for out in cast.outputs:
                if not out:
                    continue
                if graph.is_pinned(out):
                    return False
                if any(c.index != next_cast.index for c in graph.consumers(out)):
                    return False

        pinned = [out for out in casts[-1].outputs if out and graph.is_pinned(out)]
        if not pinned:
            return True
        if len(pinned) > 1:
            return False

        cast_input = casts[0].inputs[0]
        return (
            graph.producer(cast_input) is not None
            and not graph.is_pinned(cast_input)
            and all(c.index == casts[0].index for c in graph.consumers(cast_input))
        )

    def _check_cast_targets(self, graph: Graph, value_names: list[str]) -> None:
        for name in value_names:
            if name and graph.is_input_or_initializer(name) and graph.is_output(name):
                raise CastPropagationError(
                    f"Value {name} is both a graph input or initializer and a graph output"
                )

    # ----------------------------------------------------------------------------------------------
    # Cast synthesis and elimination
    # ----------------------------------------------------------------------------------------------
    def _insert_casts(
        self,
        graph: Graph,
        value_names,
        to_type: int,
        readers: dict[str, set[int]] | None = None,
    ) -> list[Node]:
        """Insert a Cast to ``to_type`` on each of the given values.

        A value whose type already is ``to_type`` becomes the output of the Cast and its producer
        is given a fresh value of the opposite precision. Otherwise the value becomes the input of
        the Cast and its consumers read a fresh value of type ``to_type``.

        Args:
            graph: Graph to modify.
            value_names: Names of the values to cast. Absent values are skipped.
            to_type: Target onnx element type.
            readers: Optional map from value name to the indices of the consumers that should
                read the cast value. Other consumers keep reading the original value. Ignored
                when the value itself becomes the Cast output.

        Returns:
            list[Node]: The inserted Cast nodes.

        Raises:
            CastPropagationError: If a value is both a graph input and a graph output.
        """
        value_names = list(value_names)
        self._check_cast_targets(graph, value_names)

        casts = []
        for name in value_names:
            value = graph.value(name)
            if not value.exists:
                continue

            producer = graph.producer(name)
            is_cast_output = value.elem_type == to_type
            if is_cast_output and producer is None:
                # Nothing to redirect the producer side to
                logger.debug(f"{name} is already {type_name(to_type)}, no cast needed")
                continue

            new_type = (
                utils.opposite_type(to_type, self.low_precision_type) if is_cast_output else to_type
            )
            new_name = graph.get_or_create_value(graph.generate_value_name(name), new_type).name
            cast_input, cast_output = (new_name, name) if is_cast_output else (name, new_name)

            selected = None if is_cast_output or readers is None else readers.get(name, set())
            consumer_slots = [
                (consumer.index, slot)
                for consumer in graph.consumers(name)
                if selected is None or consumer.index in selected
                for slot, inp in enumerate(consumer.inputs)
                if inp == name
            ]
            if not is_cast_output and not consumer_slots:
                logger.debug(f"{name} has no reader to redirect, no cast needed")
                continue
            src_slot = producer.outputs.index(name) if producer is not None else -1

            if producer is not None:
                for dst, dst_slot in consumer_slots:
                    graph.remove_edge(producer.index, dst, src_slot, dst_slot)
                graph.set_node_output(producer.index, src_slot, cast_input)
            for dst, dst_slot in consumer_slots:
                graph.set_node_input(dst, dst_slot, cast_output)

            cast = graph.add_node(
                graph.generate_node_name(f"{name}_cast"),
                "Cast",
                [cast_input],
                [cast_output],
                utils.make_cast_attrs(to_type),
            )
            if producer is not None:
                graph.add_edge(producer.index, cast.index, src_slot, 0)
            for dst, dst_slot in consumer_slots:
                graph.add_edge(cast.index, dst, 0, dst_slot)

            logger.debug(f"Inject cast to {type_name(to_type)} on {name}: {cast.name}")
            casts.append(cast)
        return casts

    def _remove_casts(self, graph: Graph, casts: list[Node]) -> None:
        """Remove a chain of Casts, connecting the producer of the lead input to the readers of
        the trail outputs.

        Args:
            graph: Graph to modify.
            casts: Non-empty run of Cast nodes, each one reading an output of the previous one.

        Raises:
            CastPropagationError: If the run is empty, is not a chain, or cannot be removed.
        """
        if not casts:
            raise CastPropagationError("Cannot remove an empty run of Cast nodes")
        for cast, next_cast in zip(casts, casts[1:]):
            if next_cast.inputs[0] not in cast.outputs:
                raise CastPropagationError(
                    f"Cast nodes {cast.name} and {next_cast.name} do not form a chain"
                )
        if not self._can_remove_casts(graph, casts):
            raise CastPropagationError(
                f"Removing {[c.name for c in casts]} would drop a value that is still read"
            )

        lead, trail = casts[0], casts[-1]
        cast_input = lead.inputs[0]
        trail_outputs = [out for out in trail.outputs if out]
        producer = graph.producer(cast_input)
        src_slot = producer.outputs.index(cast_input) if producer is not None else -1

        consumer_slots = [
            (consumer.index, slot)
            for out in trail_outputs
            for consumer in graph.consumers(out)
            for slot, inp in enumerate(consumer.inputs)
            if inp == out
        ]
        pinned = [out for out in trail_outputs if graph.is_pinned(out)]

        for cast in casts:
            graph.remove_node(cast.index)

        survivor = cast_input
        if pinned:
            # Keep the name of the graph output, the lead input disappears instead
            survivor = pinned[0]
            graph.set_node_output(producer.index, src_slot, survivor)

        for dst, dst_slot in consumer_slots:
            graph.set_node_input(dst, dst_slot, survivor)
            if producer is not None:
                graph.add_edge(producer.index, dst, src_slot, dst_slot)

        logger.debug(f"Removed casts {[c.name for c in casts]}, {survivor} now feeds their readers")

    # ----------------------------------------------------------------------------------------------
    # Back-to-back casts
    # ----------------------------------------------------------------------------------------------
    def remove_back_to_back_casts(self, graph: Graph) -> bool:
        """Remove Casts that directly follow another Cast.

        A pair that converts to one precision and back cancels out and both Casts are removed. A
        Cast that repeats the conversion of its parent is a duplicate and only the child is
        removed.

        Returns:
            bool: Whether any Cast was removed.
        """
        high, low = self.high_precision_type.onnx_type, self.low_precision_type.onnx_type
        modified = False
        for index in graph.node_indices():
            node = graph.get_node(index)
            if not self._is_cast(node):
                continue
            to_type = self._get_cast_to_type(node)
            if not self._is_float_type(to_type):
                continue

            parent_removed = False
            for output in list(node.outputs):
                for child in graph.consumers(output):
                    if graph.get_node(child.index) is None or not self._is_cast(child):
                        continue
                    child_to_type = self._get_cast_to_type(child)
                    if {to_type, child_to_type} == {high, low}:
                        # The parent and child cancel out
                        input_type = graph.value(node.inputs[0]).elem_type
                        if input_type not in (TensorProto.UNDEFINED, child_to_type):
                            continue
                        if not self._can_remove_casts(graph, [node, child]):
                            continue
                        logger.debug(f"Removing cancelling casts {node.name} -> {child.name}")
                        self._remove_casts(graph, [node, child])
                        modified = parent_removed = True
                        break
                    elif child_to_type == to_type:
                        # Child is a duplicate of parent
                        if not self._can_remove_casts(graph, [child]):
                            continue
                        logger.debug(f"Removing duplicate cast {child.name} of {node.name}")
                        self._remove_casts(graph, [child])
                        modified = True
                if parent_removed:
                    break
        return modified

    # ----------------------------------------------------------------------------------------------
    # Frontier search
    # ----------------------------------------------------------------------------------------------
    def search_upstream(
        self, graph: Graph, value_name: str, readers: dict[str, set[int]] | None = None
    ) -> list[str]:
        """Collect the values that need a low precision Cast to remove one placed on ``value_name``.

        The search walks producers through transparent and tolerant ops, following only their
        data inputs that may hold floats. It stops at graph inputs, at values produced by any other
        op, at pinned values and at values with more than one reader, all of which join the
        frontier.

        Args:
            graph: Graph to search.
            value_name: Input of the low precision Cast.
            readers: If given, filled with the indices of the nodes on the searched path that read
                each frontier value. Readers outside the path must keep the original value.

        Returns:
            list[str]: Frontier values, in discovery order.

        Raises:
            CastPropagationError: If the search runs into a cycle.
        """
        frontier: dict[str, None] = {}
        visited: set[str] = set()
        on_path: set[str] = set()
        if readers is None:
            readers = {}

        def _search(name, reader):
            if name in on_path:
                raise CastPropagationError(f"Graph contains a cycle through {name}")
            if name in visited:
                if name in frontier and reader is not None:
                    readers.setdefault(name, set()).add(reader)
                return
            visited.add(name)

            producer = graph.producer(name)
            if (
                producer is None
                or not self.policy.is_transparent_or_tolerant(producer.op_type)
                or graph.is_pinned(name)
                or len(graph.consumers(name)) > 1
            ):
                frontier[name] = None
                if reader is not None:
                    readers.setdefault(name, set()).add(reader)
                return

            on_path.add(name)
            for slot, inp in enumerate(producer.inputs):
                if inp and is_data_input(producer.op_type, slot) and self._may_be_float(graph, inp):
                    _search(inp, producer.index)
            on_path.discard(name)

        _search(value_name, None)
        return list(frontier)

    def search_downstream(
        self, graph: Graph, value_name: str, readers: dict[str, set[int]] | None = None
    ) -> list[str]:
        """Collect the values that need an FP32 Cast to remove one placed on ``value_name``.

        The search walks consumers through transparent ops that read the value as data, and
        continues on their data outputs that may hold floats. A value read by any other op, or
        pinned, joins the frontier.

        Args:
            graph: Graph to search.
            value_name: Output of the FP32 Cast.
            readers: If given, filled with the indices of the consumers of each frontier value that
                need the FP32 value. Transparent consumers the search walked through are left out.

        Returns:
            list[str]: Frontier values, in discovery order.

        Raises:
            CastPropagationError: If the search runs into a cycle.
        """
        frontier: dict[str, None] = {}
        visited: set[str] = set()
        on_path: set[str] = set()
        if readers is None:
            readers = {}

        def _search(name):
            if name in on_path:
                raise CastPropagationError(f"Graph contains a cycle through {name}")
            if name in visited:
                return
            visited.add(name)

            if graph.is_pinned(name):
                frontier[name] = None
                readers.setdefault(name, set()).update(c.index for c in graph.consumers(name))
                return

            on_path.add(name)
            for consumer in graph.consumers(name):
                read_as_data = all(
                    is_data_input(consumer.op_type, slot)
                    for slot, inp in enumerate(consumer.inputs)
                    if inp == name
                )
                if not self.policy.is_transparent(consumer.op_type) or not read_as_data:
                    frontier[name] = None
                    readers.setdefault(name, set()).add(consumer.index)
                    continue
                for slot, out in enumerate(consumer.outputs):
                    if (
                        out
                        and is_data_output(consumer.op_type, slot)
                        and self._may_be_float(graph, out)
                    ):
                        _search(out)
            on_path.discard(name)

        _search(value_name)
        return list(frontier)

    # ----------------------------------------------------------------------------------------------
    # Forward propagation
    # ----------------------------------------------------------------------------------------------
    def propagate_forwards(self, graph: Graph, index: int, visited: set[int]) -> bool:
        """Sink FP32 Casts reachable from a node towards their consumers.

        Args:
            graph: Graph to modify.
            index: Index of the node to start from. Removed nodes are ignored.
            visited: Indices already handled in the current sweep, updated in place.

        Returns:
            bool: Whether the graph was modified.
        """
        high = self.high_precision_type.onnx_type
        modified = False
        stack = [index]
        while stack:
            node = graph.get_node(stack.pop())
            if node is None or node.index in visited:
                continue
            visited.add(node.index)

            if self._is_cast_to(node, high):
                modified |= self._sink_high_precision_cast(graph, node)
            elif self.policy.is_tolerant(node.op_type):
                modified |= self._move_casts_across_tolerant_op(graph, node)
            else:
                for out in reversed(node.outputs):
                    if out:
                        stack.extend(reversed([c.index for c in graph.consumers(out)]))
        return modified

    def _sink_high_precision_cast(self, graph: Graph, cast: Node) -> bool:
        outputs = [out for out in cast.outputs if out]
        frontier: dict[str, None] = {}
        readers: dict[str, set[int]] = {}
        for out in outputs:
            frontier.update(dict.fromkeys(self.search_downstream(graph, out, readers)))

        if not frontier or any(out in frontier for out in outputs):
            return False
        if not all(self._may_be_float(graph, name) for name in frontier):
            return False
        if not self._can_remove_casts(graph, [cast]):
            return False

        self._check_cast_targets(graph, list(frontier))
        logger.debug(f"Moving {cast.name} downstream to {list(frontier)}")
        self._remove_casts(graph, [cast])
        self._insert_casts(graph, frontier, self.high_precision_type.onnx_type, readers)
        return True

    def _move_casts_across_tolerant_op(self, graph: Graph, node: Node) -> bool:
        """Replace the FP32 Casts feeding every input of a tolerant op with one on its output."""
        high, low = self.high_precision_type.onnx_type, self.low_precision_type.onnx_type
        inputs = [inp for inp in node.inputs if inp]
        if not inputs or not node.outputs or not node.outputs[0]:
            return False

        casts: dict[int, Node] = {}
        for inp in inputs:
            producer = graph.producer(inp)
            if not self._is_cast_to(producer, high):
                return False
            casts[producer.index] = producer

        for cast in casts.values():
            if graph.value(cast.inputs[0]).elem_type not in (TensorProto.UNDEFINED, low):
                return False
            for out in cast.outputs:
                if not out:
                    continue
                if graph.is_pinned(out):
                    return False
                if any(c.index != node.index for c in graph.consumers(out)):
                    return False

        self._check_cast_targets(graph, node.outputs[:1])
        logger.debug(
            f"Replacing {len(casts)} input casts of {node.name} ({node.op_type}) "
            "with an output cast"
        )
        for cast in casts.values():
            self._remove_casts(graph, [cast])
        self._insert_casts(graph, [node.outputs[0]], high)
        return True

    # ----------------------------------------------------------------------------------------------
    # Backward propagation
    # ----------------------------------------------------------------------------------------------
    def propagate_backwards(self, graph: Graph, index: int, visited: set[int]) -> bool:
        """Hoist low precision Casts reachable from a node towards their producers.

        Args:
            graph: Graph to modify.
            index: Index of the node to start from. Removed nodes are ignored.
            visited: Indices already handled in the current sweep, updated in place.

        Returns:
            bool: Whether the graph was modified.
        """
        low = self.low_precision_type.onnx_type
        modified = False
        stack = [index]
        while stack:
            node = graph.get_node(stack.pop())
            if node is None or node.index in visited:
                continue
            visited.add(node.index)

            if self._is_cast_to(node, low):
                modified |= self._hoist_low_precision_cast(graph, node)
            else:
                for inp in reversed(node.inputs):
                    producer = graph.producer(inp) if inp else None
                    if producer is not None:
                        stack.append(producer.index)
        return modified

    def _hoist_low_precision_cast(self, graph: Graph, cast: Node) -> bool:
        cast_input = cast.inputs[0]
        readers: dict[str, set[int]] = {}
        frontier = self.search_upstream(graph, cast_input, readers)
        if not frontier or cast_input in frontier:
            return False
        if not all(self._may_be_float(graph, name) for name in frontier):
            return False
        if not self._can_remove_casts(graph, [cast]):
            return False

        self._check_cast_targets(graph, frontier)
        logger.debug(f"Moving {cast.name} upstream to {frontier}")
        self._remove_casts(graph, [cast])
        self._insert_casts(graph, frontier, self.low_precision_type.onnx_type, readers)
        return True

    # ----------------------------------------------------------------------------------------------
    # Sibling fusion
    # ----------------------------------------------------------------------------------------------
    def fuse_sibling_casts(self, graph: Graph, index: int) -> bool:
        """Fuse the sibling Casts reading any output of a node.

        Args:
            graph: Graph to modify.
            index: Index of the parent node. Removed nodes are ignored.

        Returns:
            bool: Whether any Casts were fused.
        """
        node = graph.get_node(index)
        if node is None:
            return False

        modified = False
        for output in list(node.outputs):
            if output:
                modified |= self._fuse_casts_of_value(graph, output)
        return modified

    def fuse_input_sibling_casts(self, graph: Graph) -> bool:
        """Fuse the sibling Casts reading graph inputs and initializers."""
        modified = False
        for name in [*graph.inputs, *graph.initializers]:
            modified |= self._fuse_casts_of_value(graph, name)
        return modified

    def _fuse_casts_of_value(self, graph: Graph, name: str) -> bool:
        siblings: dict[int, list[Node]] = {
            self.low_precision_type.onnx_type: [],
            self.high_precision_type.onnx_type: [],
        }
        for consumer in graph.consumers(name):
            if self._is_cast(consumer) and consumer.inputs[0] == name:
                to_type = self._get_cast_to_type(consumer)
                if to_type in siblings:
                    siblings[to_type].append(consumer)

        modified = False
        for casts in siblings.values():
            if len(casts) > 1:
                self._fuse_nodes(graph, name, casts)
                modified = True
        return modified

    def _fuse_nodes(self, graph: Graph, input_name: str, nodes: list[Node]) -> Node:
        """Replace nodes of the same kind reading the same input with a single node.

        The fused node produces the concatenation of all outputs, so every reader keeps its value.
        """
        outputs = [out for node in nodes for out in node.outputs]
        consumer_slots = [
            (src_slot, consumer.index, dst_slot)
            for src_slot, out in enumerate(outputs)
            if out
            for consumer in graph.consumers(out)
            for dst_slot, inp in enumerate(consumer.inputs)
            if inp == out
        ]
        producer = graph.producer(input_name)
        first = nodes[0]

        for node in nodes:
            graph.remove_node(node.index)

        fused = graph.add_node(
            graph.generate_node_name(f"{first.name}_replace"),
            first.op_type,
            [input_name],
            outputs,
            first.attrs,
            first.domain,
        )
        if producer is not None:
            graph.add_edge(producer.index, fused.index, producer.outputs.index(input_name), 0)
        for src_slot, dst, dst_slot in consumer_slots:
            graph.add_edge(fused.index, dst, src_slot, dst_slot)

        logger.debug(f"Fused {[n.name for n in nodes]} into {fused.name}")
        return fused
