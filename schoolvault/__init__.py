"""SchoolVault Backend.

Tenant snapshot and restore engine for a multi-tenant school management
platform: versioned exports of a school's operational data and safe
MERGE/REPLACE reconciliation of those exports into a destination school.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
