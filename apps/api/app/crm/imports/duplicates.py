from __future__ import annotations

import logging
from collections.abc import Sequence

from app.crm.repositories import WorkspaceDatastore
from app.crm.schemas import DuplicateCompanyCandidate, DuplicateContactCandidate, DuplicateMatch, DuplicateReport


logger = logging.getLogger("app.crm.imports")


class DuplicateDetector:
    """Read-only lookup of candidates that already exist in the workspace.

    Contacts match on email and companies on name, both case-insensitively. A candidate can
    match several existing rows; every pairing is reported.
    """

    def __init__(self, datastore: WorkspaceDatastore) -> None:
        self.datastore = datastore

    def find_duplicates(
        self,
        contacts: Sequence[DuplicateContactCandidate],
        companies: Sequence[DuplicateCompanyCandidate],
    ) -> DuplicateReport:
        report = DuplicateReport(
            contacts=self._contact_matches(contacts),
            companies=self._company_matches(companies),
        )
        logger.info(
            "import.duplicates.checked",
            extra={"match_count": len(report.contacts) + len(report.companies)},
        )
        return report

    def _contact_matches(self, candidates: Sequence[DuplicateContactCandidate]) -> list[DuplicateMatch]:
        by_email: dict[str, list[str]] = {}
        for candidate in candidates:
            email = (candidate.email or "").strip()
            if email:
                by_email.setdefault(email.lower(), []).append(candidate.temp_id)
        if not by_email:
            return []

        matches: list[DuplicateMatch] = []
        for existing in self.datastore.find_contacts_by_emails(by_email):
            for temp_id in by_email.get((existing.email or "").lower(), []):
                matches.append(
                    DuplicateMatch(
                        temp_id=temp_id,
                        existing_id=str(existing.id),
                        existing_name=f"{existing.first_name} {existing.last_name}".strip(),
                        match_field="email",
                    )
                )
        return matches

    def _company_matches(self, candidates: Sequence[DuplicateCompanyCandidate]) -> list[DuplicateMatch]:
        by_name: dict[str, list[str]] = {}
        for candidate in candidates:
            name = (candidate.company_name or "").strip()
            if name:
                by_name.setdefault(name.lower(), []).append(candidate.temp_id)
        if not by_name:
            return []

        matches: list[DuplicateMatch] = []
        for existing in self.datastore.find_companies_by_names(by_name):
            for temp_id in by_name.get(existing.company_name.lower(), []):
                matches.append(
                    DuplicateMatch(
                        temp_id=temp_id,
                        existing_id=str(existing.id),
                        existing_name=existing.company_name,
                        match_field="company_name",
                    )
                )
        return matches
