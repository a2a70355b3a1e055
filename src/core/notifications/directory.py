# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Guardian and student directory access.

The directory is owned by the surrounding school application. The core
only reads guardians linked to students together with their consent and
opt-out records. ``InMemoryGuardianDirectory`` backs tests and local runs.
"""

from typing import Protocol

from src.core.notifications.consent import ConsentRecord, OptOutRecord
from src.core.notifications.models import GuardianContact


class GuardianDirectory(Protocol):
    """Read-only view of guardian links, contacts and preferences."""

    async def get_guardians(self, student_id: str) -> list[GuardianContact]:
        """Guardians linked to a student, primary contacts first. Excludes secondary contacts."""
        ...

    async def get_consents(self, guardian_ids: list[str]) -> list[ConsentRecord]: ...

    async def get_opt_outs(self, guardian_ids: list[str]) -> list[OptOutRecord]: ...

    async def get_emergency_contacts(
        self,
        school_id: str,
        student_ids: list[str] | None = None,
    ) -> list[GuardianContact]:
        """Links eligible for emergency broadcasts in a school, optionally narrowed to students."""
        ...

    async def get_secondary_contacts(self, student_ids: list[str]) -> list[GuardianContact]:
        """Alternate contacts reached only by emergency escalation."""
        ...


class InMemoryGuardianDirectory:
    """Dictionary-backed GuardianDirectory."""

    def __init__(self) -> None:
        self._links: list[tuple[str, GuardianContact]] = []
        self._consents: list[ConsentRecord] = []
        self._opt_outs: list[OptOutRecord] = []

    def add_guardian(self, contact: GuardianContact, school_id: str = "school-1") -> None:
        self._links.append((school_id, contact))

    def add_consent(self, record: ConsentRecord) -> None:
        self._consents.append(record)

    def add_opt_out(self, record: OptOutRecord) -> None:
        self._opt_outs.append(record)

    async def get_guardians(self, student_id: str) -> list[GuardianContact]:
        contacts = [
            c for _, c in self._links if c.student_id == student_id and not c.is_secondary_contact
        ]
        return sorted(contacts, key=lambda c: not c.is_primary)

    async def get_consents(self, guardian_ids: list[str]) -> list[ConsentRecord]:
        wanted = set(guardian_ids)
        return [r for r in self._consents if r.guardian_id in wanted]

    async def get_opt_outs(self, guardian_ids: list[str]) -> list[OptOutRecord]:
        wanted = set(guardian_ids)
        return [r for r in self._opt_outs if r.guardian_id in wanted]

    async def get_emergency_contacts(
        self,
        school_id: str,
        student_ids: list[str] | None = None,
    ) -> list[GuardianContact]:
        scope = set(student_ids) if student_ids is not None else None
        return [
            c
            for school, c in self._links
            if school == school_id
            and c.eligible_for_emergency
            and not c.is_secondary_contact
            and (scope is None or c.student_id in scope)
        ]

    async def get_secondary_contacts(self, student_ids: list[str]) -> list[GuardianContact]:
        scope = set(student_ids)
        return [c for _, c in self._links if c.is_secondary_contact and c.student_id in scope]
