#!/usr/bin/env python3

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

"""This module provides the command line interface (CLI) entry point for cast propagation."""

import argparse
import sys

import onnx

from castprop.convert import DEFAULT_MAX_ITERATIONS, propagate_cast_ops_from_path
from castprop.logging_config import configure_logging, logger
from castprop.op_types import CastPolicy


def get_parser() -> argparse.ArgumentParser:
    """Get the argument parser for cast propagation."""
    parser = argparse.ArgumentParser(
        description="Move, cancel and fuse the Cast nodes of a mixed precision ONNX model."
    )
    parser.add_argument("--onnx_path", type=str, required=True, help="Path to the ONNX model")
    parser.add_argument(
        "--output_path",
        type=str,
        help="Output filename to save the rewritten ONNX model. If None, save it in the same dir "
        "as the original ONNX model with an appropriate suffix.",
    )
    parser.add_argument(
        "--low_precision_type",
        "-t",
        type=str,
        default="fp16",
        help="Low precision used by the model",
        choices=["fp16", "bf16"],
    )
    parser.add_argument(
        "--max_iterations",
        type=int,
        default=DEFAULT_MAX_ITERATIONS,
        help="Maximum number of sweeps of the pass",
    )
    parser.add_argument(
        "--transparent_ops",
        type=str,
        nargs="*",
        help="Op types a Cast may cross in both directions. If not provided, the default set is "
        "used.",
    )
    parser.add_argument(
        "--tolerant_ops",
        type=str,
        nargs="*",
        help="Op types that may run in low precision. If not provided, the default set is used.",
    )
    parser.add_argument(
        "--skip_shape_inference",
        action="store_true",
        help="Do not run ONNX shape inference before and after the pass",
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        help="Log level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument("--log_file", type=str, help="Optional file to also write the log to")

    return parser


def main(argv=None):
    """Main entry point for the cast propagation command line interface.

    Args:
        argv: List of command line arguments.

    Returns:
        onnx.ModelProto: The rewritten model.
    """
    parser = get_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    model_out = propagate_cast_ops_from_path(
        args.onnx_path,
        low_precision_type=args.low_precision_type,
        policy=CastPolicy.from_op_lists(args.transparent_ops, args.tolerant_ops),
        max_iterations=args.max_iterations,
        infer_shapes=not args.skip_shape_inference,
    )

    output_path = args.output_path
    if output_path is None:
        output_path = args.onnx_path.replace(".onnx", ".castprop.onnx")

    onnx.save(model_out, output_path)
    logger.info(f"Rewritten model saved to {output_path}")
    return model_out


if __name__ == "__main__":
    main(sys.argv[1:])
