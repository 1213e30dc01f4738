# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""Logging configuration shared by every module of the package."""

import os
import sys
from pathlib import Path

from loguru import logger

__all__ = ["logger"]

_LOG_LEVEL = os.getenv("DATAGUARD_LOG_LEVEL", "INFO").upper()
_LOG_DIR = Path(os.getenv("DATAGUARD_LOG_DIR", "logs"))

# Remove the default handler so we control formatting and levels
logger.remove()

# Sink 1: stderr (human-readable)
logger.add(
    sys.stderr,
    level=_LOG_LEVEL,
    format=(
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    ),
)

# Sink 2: file (JSON, rotation, retention)
_LOG_DIR.mkdir(parents=True, exist_ok=True)
logger.add(
    _LOG_DIR / "app.log",
    rotation="500 MB",
    retention="10 days",
    serialize=True,
    enqueue=True,
    level=_LOG_LEVEL,
)
