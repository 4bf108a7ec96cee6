# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for SchoolVault.

Domains:
    audit: Append-only audit trail.
    auth: Password hashing and token validation.
    backup: Tenant snapshots, backup storage and restore.
    tenant: Tenant lookups and activity checks.
"""
