# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant registry domain."""

from schoolvault.domains.tenant.service import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantService,
    TenantServiceError,
)

__all__ = [
    "TenantInactiveError",
    "TenantNotFoundError",
    "TenantService",
    "TenantServiceError",
]
