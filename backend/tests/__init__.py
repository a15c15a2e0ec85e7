"""Tests for the direct messaging backend."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
