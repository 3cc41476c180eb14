"""Identity reconciliation: match incoming identifiers to stored contacts,
merge clusters the identifiers connect, and report the consolidated view."""

import logging
from collections import deque
from typing import List, Optional, Sequence, Set

from consolidated_view import build_view
from db_models import ConsolidatedContact, Contact, LinkPrecedence
from db_setup import ContactRepository, ContactStore
from errors import InconsistentCluster, InvalidInput

logger = logging.getLogger(__name__)


class KnownInfo:
    """Emails and phone numbers already attributed to one cluster."""

    def __init__(self):
        self.emails: Set[str] = set()
        self.phone_numbers: Set[str] = set()

    def add(self, email: Optional[str], phone: Optional[str]) -> None:
        if email:
            self.emails.add(email)
        if phone:
            self.phone_numbers.add(phone)

    def add_contacts(self, contacts: Sequence[Contact]) -> None:
        for contact in contacts:
            self.add(contact.email, contact.phoneNumber)

    def shares_with(self, contacts: Sequence[Contact]) -> bool:
        return any(
            (contact.email and contact.email in self.emails)
            or (contact.phoneNumber and contact.phoneNumber in self.phone_numbers)
            for contact in contacts
        )


def _clean(value: Optional[str]) -> Optional[str]:
    return value or None


class ContactReconciler:
    """Resolves an (email, phone) pair to one consolidated identity.

    The whole call runs in a single store transaction, which holds the
    database write lock from the first lookup to the final read, so two
    calls touching the same identifiers cannot interleave.
    """

    def __init__(self, store: ContactStore):
        self.store = store

    def identify(self, email: Optional[str] = None, phone: Optional[str] = None) -> ConsolidatedContact:
        email, phone = _clean(email), _clean(phone)
        if not email and not phone:
            raise InvalidInput("Either email or phoneNumber must be provided")

        with self.store.transaction() as repo:
            return self._identify(repo, email, phone)

    def _identify(self, repo: ContactRepository, email: Optional[str], phone: Optional[str]) -> ConsolidatedContact:
        candidates = repo.find_matching(email, phone)
        logger.debug("identify: %d candidate(s) for email=%r phone=%r", len(candidates), email, phone)

        if not candidates:
            contact = repo.create(email, phone, precedence=LinkPrecedence.PRIMARY)
            logger.info("Created primary contact %d", contact.id)
            return build_view(contact.id, [contact])

        primaries = self._touched_primaries(repo, candidates)
        elected = primaries[0]

        known = KnownInfo()
        known.add(elected.email, elected.phoneNumber)
        known.add_contacts(repo.find_by_linked_id(elected.id))

        self._merge_clusters(repo, elected, primaries[1:], known, email, phone)

        if self._warrants_new_contact(candidates, known, email, phone):
            contact = repo.create(email, phone, linked_id=elected.id, precedence=LinkPrecedence.SECONDARY)
            logger.info("Created secondary contact %d linked to %d", contact.id, elected.id)

        cluster = repo.find_cluster(elected.id)
        if not any(contact.id == elected.id for contact in cluster):
            raise InconsistentCluster(f"Elected primary contact {elected.id} disappeared during reconciliation")
        return build_view(elected.id, cluster)

    def _touched_primaries(self, repo: ContactRepository, candidates: List[Contact]) -> List[Contact]:
        """Every primary the candidates reach, directly or through their link, oldest first."""
        by_id = {contact.id: contact for contact in candidates if contact.is_primary}

        linked_ids = {contact.linkedId for contact in candidates if not contact.is_primary}
        if None in linked_ids:
            orphans = sorted(c.id for c in candidates if not c.is_primary and c.linkedId is None)
            raise InconsistentCluster(f"Secondary contact(s) {orphans} have no linked primary")

        if linked_ids:
            linked = repo.find_by_ids(linked_ids, precedence=LinkPrecedence.PRIMARY)
            unresolved = linked_ids - {contact.id for contact in linked}
            if unresolved:
                raise InconsistentCluster(
                    f"Linked id(s) {sorted(unresolved)} do not resolve to a live primary contact"
                )
            for contact in linked:
                by_id.setdefault(contact.id, contact)

        return sorted(by_id.values(), key=lambda c: (c.createdAt, c.id))

    def _merge_clusters(
        self,
        repo: ContactRepository,
        elected: Contact,
        others: List[Contact],
        known: KnownInfo,
        email: Optional[str],
        phone: Optional[str],
    ) -> None:
        """Demote every other primary whose cluster overlaps the elected one.

        The incoming pair counts as evidence alongside the elected cluster's
        values. A primary that does not overlap yet is re-queued; the queue is
        drained once a full pass merges nothing.
        """
        evidence = KnownInfo()
        evidence.emails |= known.emails
        evidence.phone_numbers |= known.phone_numbers
        evidence.add(email, phone)

        pending = deque(others)
        merged_in_pass = True
        while pending and merged_in_pass:
            merged_in_pass = False
            for _ in range(len(pending)):
                other = pending.popleft()
                children = repo.find_by_linked_id(other.id)
                if not evidence.shares_with([other, *children]):
                    pending.append(other)
                    continue

                self._demote(repo, other, elected)
                for info in (known, evidence):
                    info.add_contacts([other, *children])
                merged_in_pass = True

        for other in pending:
            logger.info("Primary contact %d shares nothing with %d; left unmerged", other.id, elected.id)

    def _demote(self, repo: ContactRepository, other: Contact, elected: Contact) -> None:
        with repo.savepoint():
            repo.update(other.id, linkPrecedence=LinkPrecedence.SECONDARY, linkedId=elected.id)
            relinked = repo.update_where_linked_id(other.id, elected.id)
        logger.info(
            "Demoted primary contact %d under %d, re-linked %d contact(s)", other.id, elected.id, relinked
        )

    def _warrants_new_contact(
        self,
        candidates: List[Contact],
        known: KnownInfo,
        email: Optional[str],
        phone: Optional[str],
    ) -> bool:
        has_new_info = bool(
            (email and email not in known.emails) or (phone and phone not in known.phone_numbers)
        )
        if not has_new_info:
            return False

        if any((c.email, c.phoneNumber) == (email, phone) for c in candidates):
            return False

        # at least one identifier must already be on file to tie the pair to this person
        return any(
            (email and c.email == email) or (phone and c.phoneNumber == phone) for c in candidates
        )
