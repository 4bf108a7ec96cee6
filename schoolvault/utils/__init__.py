# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Shared utilities (logging, datetime helpers)."""

from schoolvault.utils.datetime import utc_now
from schoolvault.utils.logging import bind_context, clear_context, setup_logging

__all__ = [
    "utc_now",
    "setup_logging",
    "bind_context",
    "clear_context",
]
