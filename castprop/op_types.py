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

"""Utility functions to categorize onnx ops for cast propagation.

Two categories matter to the pass:

* *transparent* ops only rearrange or select data, so their result means the same thing in either
  precision. A Cast may be moved across them in both directions.
* *tolerant* ops may run directly in low precision. When every input of such an op comes out of a
  Cast to FP32, the input Casts may be replaced by one Cast on its output.

Moving a Cast across a tolerant op changes the precision the arithmetic runs in. This is a
performance policy, not an exact rewrite.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

FP16_ALLOW_OPS = frozenset(
    [
        "Transpose",
        "Reshape",
        "Gather",
        "Split",
        "Relu",
        "Where",
        "Dropout",
    ]
)

FP16_SAFE_OPS = frozenset(
    [
        "LayerNorm",
        "Gelu",
        "FastGelu",
        "Tanh",
        "MatMul",
        "MatAdd",
        "Add",
        "Sub",
        "Mul",
        "Div",
        "Neg",
        "Gemm",
        "FusedMatMul",
        "FusedGemm",
    ]
)

# Input and output slots of transparent ops that do not carry the data being cast
NON_DATA_INPUTS = {
    "Reshape": (1,),
    "Gather": (1,),
    "Split": (1,),
    "Where": (0,),
    "Dropout": (1, 2),
}

NON_DATA_OUTPUTS = {
    "Dropout": (1,),
}


def is_cast_op(op_type: str):
    """Returns whether the given op is a precision conversion op or not."""
    return op_type == "Cast"


def is_data_input(op_type: str, slot: int) -> bool:
    """Returns whether an input slot carries the data a Cast may be moved across.

    Shapes, indices, split sizes and masks keep their type whatever precision the data runs in.
    """
    return slot not in NON_DATA_INPUTS.get(op_type, ())


def is_data_output(op_type: str, slot: int) -> bool:
    """Returns whether an output slot carries data, as opposed to e.g. the mask of a Dropout."""
    return slot not in NON_DATA_OUTPUTS.get(op_type, ())


@dataclass(frozen=True)
class CastPolicy:
    """Immutable pair of op sets consulted by the cast propagation pass.

    Different targets can supply their own sets, e.g. a backend without a low precision ``Gemm``
    drops it from ``tolerant_ops``.
    """

    transparent_ops: frozenset[str] = field(default=FP16_ALLOW_OPS)
    tolerant_ops: frozenset[str] = field(default=FP16_SAFE_OPS)

    def __post_init__(self):
        # Accept any iterable, store frozensets
        object.__setattr__(self, "transparent_ops", frozenset(self.transparent_ops))
        object.__setattr__(self, "tolerant_ops", frozenset(self.tolerant_ops))
        if any(is_cast_op(op) for op in self.transparent_ops | self.tolerant_ops):
            raise ValueError("Cast cannot be classified as a transparent or tolerant op")

    @classmethod
    def from_op_lists(
        cls,
        transparent_ops: Iterable[str] | None = None,
        tolerant_ops: Iterable[str] | None = None,
    ) -> "CastPolicy":
        """Build a policy, falling back to the default set for every list that is None."""
        return cls(
            transparent_ops=FP16_ALLOW_OPS if transparent_ops is None else transparent_ops,
            tolerant_ops=FP16_SAFE_OPS if tolerant_ops is None else tolerant_ops,
        )

    def is_transparent(self, op_type: str) -> bool:
        return op_type in self.transparent_ops

    def is_tolerant(self, op_type: str) -> bool:
        return op_type in self.tolerant_ops

    def is_transparent_or_tolerant(self, op_type: str) -> bool:
        return op_type in self.transparent_ops or op_type in self.tolerant_ops


DEFAULT_CAST_POLICY = CastPolicy()
