"""Assembles the consolidated identity view returned for a cluster."""

from typing import List, Optional, Sequence

from db_models import ConsolidatedContact, Contact


def _primary_first(values: set, primary_value: Optional[str]) -> List[str]:
    ordered = sorted(values)
    if primary_value in values:
        ordered.remove(primary_value)
        ordered.insert(0, primary_value)
    return ordered


def build_view(primary_id: int, contacts: Sequence[Contact]) -> ConsolidatedContact:
    """Summarise a cluster around its elected primary.

    Emails and phone numbers are deduplicated and sorted, except that the
    primary's own value always comes first. Every contact other than the
    primary counts as secondary, whatever its stored precedence.
    """
    primary = next((contact for contact in contacts if contact.id == primary_id), None)

    emails = {contact.email for contact in contacts if contact.email}
    phone_numbers = {contact.phoneNumber for contact in contacts if contact.phoneNumber}
    secondary_ids = sorted({contact.id for contact in contacts if contact.id != primary_id})

    return ConsolidatedContact(
        primaryContatctId=primary_id,
        emails=_primary_first(emails, primary.email if primary else None),
        phoneNumbers=_primary_first(phone_numbers, primary.phoneNumber if primary else None),
        secondaryContactIds=secondary_ids,
    )
