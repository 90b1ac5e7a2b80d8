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

"""Utility functions for cast propagation.

This module holds the precision table and the helpers that read the target type of Cast nodes.
"""

from collections import namedtuple

import numpy as np
import onnx
from onnx import TensorProto

PrecisionTypes = namedtuple("PrecisionTypes", ["onnx_type", "numpy_type", "str_short", "str_full"])

PRECISION_MAP = {
    "fp32": PrecisionTypes(TensorProto.FLOAT, np.float32, "fp32", "float32"),
    "fp16": PrecisionTypes(TensorProto.FLOAT16, np.float16, "fp16", "float16"),
    "bf16": PrecisionTypes(TensorProto.BFLOAT16, None, "bf16", "bfloat16"),
}

LOW_PRECISION_TYPES = ["fp16", "bf16"]


def get_precision(precision: str) -> PrecisionTypes:
    """Look up a precision by its short name.

    Args:
        precision: One of the keys of ``PRECISION_MAP``.

    Returns:
        PrecisionTypes: The matching entry.

    Raises:
        ValueError: If the precision is unknown.
    """
    if precision not in PRECISION_MAP:
        raise ValueError(f"Unsupported precision type: {precision}")
    return PRECISION_MAP[precision]


def opposite_type(onnx_type: int, low_precision_type: PrecisionTypes) -> int:
    """Return the other side of the (high, low) precision pair for the given element type."""
    high_onnx_type = PRECISION_MAP["fp32"].onnx_type
    if onnx_type == high_onnx_type:
        return low_precision_type.onnx_type
    if onnx_type == low_precision_type.onnx_type:
        return high_onnx_type
    raise ValueError(
        f"Element type {type_name(onnx_type)} is neither fp32 nor {low_precision_type.str_short}"
    )


def type_name(onnx_type: int) -> str:
    """Human readable name of an onnx element type, used in log messages."""
    return onnx.TensorProto.DataType.Name(onnx_type)


def get_cast_to_type(attrs: dict[str, onnx.AttributeProto]) -> int:
    """Get the target type from the attributes of a Cast node.

    Args:
        attrs: Attribute map of the Cast node.

    Returns:
        int: The target type value from the Cast node's 'to' attribute.

    Raises:
        ValueError: If the Cast node does not have a 'to' attribute.
    """
    if "to" not in attrs:
        raise ValueError("Cast node does not have 'to' attribute")
    return attrs["to"].i


def make_cast_attrs(to_type: int) -> dict[str, onnx.AttributeProto]:
    """Attribute map for a new Cast node converting to ``to_type``."""
    return {"to": onnx.helper.make_attribute("to", to_type)}
