# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Audit trail infrastructure."""

from src.infrastructure.audit.logger import (
    AuditEntry,
    AuditLogger,
    AuditSink,
    EventBusAuditSink,
    StructlogAuditSink,
)

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "AuditSink",
    "EventBusAuditSink",
    "StructlogAuditSink",
]
