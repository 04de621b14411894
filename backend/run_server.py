#!/usr/bin/env python3
"""
Startup script for Uvicorn that respects LOG_LEVEL from settings
"""
import os

import uvicorn

from charachat.config import settings

log_level = settings.log_level.lower()
# Disable access log when log level is ERROR
access_log = log_level != "error"

port = int(os.getenv("PORT", "9876"))
host = os.getenv("HOST", "0.0.0.0")

uvicorn.run(
    "charachat.main:app",
    host=host,
    port=port,
    log_level=log_level,
    access_log=access_log
)
