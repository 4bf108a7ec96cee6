# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Audit trail domain."""

from schoolvault.domains.audit.service import AuditService, redact

__all__ = ["AuditService", "redact"]
