# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""API v1 routes package.

Modules:
    backups: Tenant snapshot and restore endpoints (platform operators).
"""

from fastapi import APIRouter

from schoolvault.api.v1 import backups

# Create the main v1 router
router = APIRouter(prefix="/api/v1")

router.include_router(backups.router, prefix="/backups", tags=["Backups"])
