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

"""Entry points that run cast propagation on ONNX models.

A single :meth:`CastPropagator.apply` call does one sweep. The functions here import the model,
re-apply the pass until it stops changing the graph (or an iteration cap is hit), and export the
result.
"""

import onnx

from castprop import utils
from castprop.graph import Graph
from castprop.logging_config import logger
from castprop.op_types import CastPolicy
from castprop.propagator import CastPropagator

DEFAULT_MAX_ITERATIONS = 20


def run_to_fixpoint(
    graph: Graph,
    propagator: CastPropagator,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> int:
    """Apply the pass until it reports no change.

    Args:
        graph: Graph to rewrite in place.
        propagator: Configured pass.
        max_iterations: Maximum number of sweeps.

    Returns:
        int: Number of sweeps performed.
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be positive, got {max_iterations}")

    for iteration in range(1, max_iterations + 1):
        modified = propagator.apply(graph)
        logger.debug(
            f"Sweep {iteration}: modified={modified}, {graph.count_op_type('Cast')} Cast nodes"
        )
        if not modified:
            return iteration

    logger.warning(f"Cast propagation did not reach a fixpoint after {max_iterations} sweeps")
    return max_iterations


def propagate_cast_ops(
    model: onnx.ModelProto,
    low_precision_type: str = "fp16",
    policy: CastPolicy | None = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    infer_shapes: bool = True,
) -> onnx.ModelProto:
    """Minimize the Cast nodes of a mixed precision model.

    Args:
        model: ONNX model whose Casts were inserted by a mixed precision conversion.
        low_precision_type: Low precision used by the model ('fp16' or 'bf16').
        policy: Transparent and tolerant op sets. Defaults to the built-in sets.
        max_iterations: Maximum number of sweeps of the pass.
        infer_shapes: Run ONNX shape inference before the pass, to learn the element types of
            intermediate values, and after it, to repopulate value_info.

    Returns:
        onnx.ModelProto: The rewritten model. The input model is left untouched.
    """
    assert low_precision_type in utils.LOW_PRECISION_TYPES, (
        "low_precision_type must be either fp16 or bf16"
    )

    if infer_shapes:
        model = onnx.shape_inference.infer_shapes(model)

    graph = Graph.from_onnx(model)
    num_casts = graph.count_op_type("Cast")

    propagator = CastPropagator(low_precision_type=low_precision_type, policy=policy)
    num_sweeps = run_to_fixpoint(graph, propagator, max_iterations)

    model_mod = graph.to_onnx()
    if infer_shapes:
        model_mod = onnx.shape_inference.infer_shapes(model_mod)

    num_casts_mod = sum(1 for node in model_mod.graph.node if node.op_type == "Cast")
    logger.info(f"Cast nodes: {num_casts} -> {num_casts_mod} after {num_sweeps} sweep(s)")
    return model_mod


def propagate_cast_ops_from_path(onnx_path: str, **kwargs) -> onnx.ModelProto:
    """Load a model from disk and run :func:`propagate_cast_ops` on it.

    Args:
        onnx_path: Path to the input ONNX model.
        **kwargs: Forwarded to :func:`propagate_cast_ops`.

    Returns:
        onnx.ModelProto: The rewritten model.
    """
    model = onnx.load(onnx_path, load_external_data=True)
    return propagate_cast_ops(model, **kwargs)
