# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import os
import sys

from loguru import logger

LOG_LEVEL_ENV = "COREASON_GATEWAY_LOG_LEVEL"
LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# Only loguru's own default stderr handler is replaced; sinks added by the host stay.
try:
    logger.remove(0)
except ValueError:
    pass
logger.add(sys.stderr, level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(), format=LOG_FORMAT)

__all__ = ["logger"]
