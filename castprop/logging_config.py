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

"""Logging configuration for cast propagation.

All castprop modules log through the ``castprop`` logger (or a child of it), so a single call to
:func:`configure_logging` controls the verbosity of the graph substrate, the pass and the driver.
"""

import logging
import os
import sys

# Parent logger for all castprop components
logger = logging.getLogger("castprop")


def configure_logging(level=logging.INFO, log_file=None):
    """Configure logging for all castprop components.

    Args:
        level: The logging level to use, either a ``logging`` constant or its name
            (default: logging.INFO).
        log_file: Optional path to a log file. If provided, logs will be written to this file
                 in addition to stdout (default: None).
    """
    if isinstance(level, str):
        level = level.upper()

    # Set level for the parent logger and all child loggers
    logger.setLevel(level)

    # Remove any existing handlers to ensure clean configuration
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("[castprop] - %(levelname)s - %(message)s")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.info(f"Logging configured to write to file: {log_file}")
        except OSError as e:
            logger.error(f"Failed to setup file logging to {log_file}: {e!s}")

    # Prevent log messages from propagating to the root logger
    logger.propagate = False

    for name in logging.root.manager.loggerDict:
        if name.startswith("castprop."):
            logging.getLogger(name).setLevel(level)


# Configure with default settings if not already configured
configure_logging()
