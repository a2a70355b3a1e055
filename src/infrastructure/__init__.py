# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Infrastructure layer for external service integrations.

This package contains clients and managers for:
- Database connections (SQLAlchemy async)
- Notification channels (rich messaging, SMS, email)
- In-process event bus and audit trail
- Background jobs and connectivity monitoring
"""
