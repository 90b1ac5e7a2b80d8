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

"""Cast propagation for mixed precision ONNX graphs."""

import sys

MIN_PYTHON_VERSION = (3, 10)

from .logging_config import configure_logging, logger

# Check the current Python version
if sys.version_info < MIN_PYTHON_VERSION:
    logger.warning(
        f"This package requires Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or higher. "
        f"You are using Python {sys.version_info[0]}.{sys.version_info[1]}",
    )

from .convert import propagate_cast_ops, propagate_cast_ops_from_path, run_to_fixpoint
from .graph import Edge, Graph, Node, Value
from .op_types import DEFAULT_CAST_POLICY, CastPolicy
from .propagator import CastPropagationError, CastPropagator
