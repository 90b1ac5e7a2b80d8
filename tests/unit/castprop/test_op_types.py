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

import dataclasses

import pytest
from onnx import TensorProto

from castprop import utils
from castprop.op_types import (
    DEFAULT_CAST_POLICY,
    FP16_ALLOW_OPS,
    FP16_SAFE_OPS,
    CastPolicy,
    is_cast_op,
    is_data_input,
    is_data_output,
)


def test_default_sets_are_disjoint():
    assert not FP16_ALLOW_OPS & FP16_SAFE_OPS
    assert "Cast" not in FP16_ALLOW_OPS | FP16_SAFE_OPS


@pytest.mark.parametrize("op_type", ["Transpose", "Reshape", "Gather", "Split", "Relu", "Where"])
def test_transparent_ops(op_type):
    assert not DEFAULT_CAST_POLICY.is_tolerant(op_type)
    assert DEFAULT_CAST_POLICY.is_transparent(op_type)
    assert DEFAULT_CAST_POLICY.is_transparent_or_tolerant(op_type)


@pytest.mark.parametrize("op_type", ["MatMul", "Gemm", "Add", "Mul", "Tanh", "FusedMatMul"])
def test_tolerant_ops(op_type):
    assert not DEFAULT_CAST_POLICY.is_transparent(op_type)
    assert DEFAULT_CAST_POLICY.is_tolerant(op_type)
    assert DEFAULT_CAST_POLICY.is_transparent_or_tolerant(op_type)


@pytest.mark.parametrize("op_type", ["Softmax", "Sigmoid", "Exp", "Conv"])
def test_unclassified_ops(op_type):
    assert not DEFAULT_CAST_POLICY.is_transparent_or_tolerant(op_type)


def test_is_cast_op():
    assert is_cast_op("Cast")
    assert not is_cast_op("CastLike")


@pytest.mark.parametrize(
    ("op_type", "slot"), [("Reshape", 1), ("Gather", 1), ("Split", 1), ("Where", 0), ("Dropout", 2)]
)
def test_non_data_inputs(op_type, slot):
    assert not is_data_input(op_type, slot)
    assert is_data_input(op_type, 0 if slot else 1)


def test_data_outputs():
    assert is_data_output("Dropout", 0)
    assert not is_data_output("Dropout", 1)
    assert is_data_output("Split", 1)
    assert is_data_input("Concat", 3)


def test_policy_from_op_lists():
    policy = CastPolicy.from_op_lists(transparent_ops=["Transpose"], tolerant_ops=None)
    assert policy.transparent_ops == frozenset(["Transpose"])
    assert policy.tolerant_ops == FP16_SAFE_OPS
    assert not policy.is_transparent("Reshape")

    policy = CastPolicy.from_op_lists(tolerant_ops=[])
    assert policy.transparent_ops == FP16_ALLOW_OPS
    assert not policy.is_tolerant("MatMul")


def test_policy_is_immutable():
    policy = CastPolicy(transparent_ops=["Transpose"], tolerant_ops=("Add",))
    assert isinstance(policy.transparent_ops, frozenset)
    assert isinstance(policy.tolerant_ops, frozenset)
    with pytest.raises(dataclasses.FrozenInstanceError):
        policy.tolerant_ops = frozenset()


@pytest.mark.parametrize(
    "kwargs", [{"transparent_ops": ["Cast"]}, {"tolerant_ops": ["Add", "Cast"]}]
)
def test_policy_rejects_cast(kwargs):
    with pytest.raises(ValueError, match="Cast"):
        CastPolicy(**kwargs)


@pytest.mark.parametrize(
    ("low_precision_type", "expected"),
    [("fp16", TensorProto.FLOAT16), ("bf16", TensorProto.BFLOAT16)],
)
def test_opposite_type(low_precision_type, expected):
    low = utils.get_precision(low_precision_type)
    assert low.onnx_type == expected
    assert utils.opposite_type(TensorProto.FLOAT, low) == expected
    assert utils.opposite_type(expected, low) == TensorProto.FLOAT
    with pytest.raises(ValueError):
        utils.opposite_type(TensorProto.INT64, low)


def test_get_precision_rejects_unknown_type():
    with pytest.raises(ValueError):
        utils.get_precision("fp8")


def test_get_cast_to_type():
    assert utils.get_cast_to_type(utils.make_cast_attrs(TensorProto.FLOAT16)) == TensorProto.FLOAT16
    with pytest.raises(ValueError, match="'to'"):
        utils.get_cast_to_type({})
