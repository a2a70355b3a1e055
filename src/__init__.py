"""Parent notification delivery and safety service.

Delivers school-to-parent messages over rich messaging, SMS and email
with channel fallback and backoff, runs emergency broadcasts with
acknowledgment-driven escalation, and gates every send on consent,
rate limits and abuse signals.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
