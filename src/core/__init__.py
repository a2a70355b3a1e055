# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Core package for the notification service.

This package contains the business logic and shared configuration:
- config: Application configuration and settings
- notifications: Delivery, emergency, consent, rate limiting and offline queue
"""
