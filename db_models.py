from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, StrictStr


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    """One stored row of the Contact table."""

    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY


class IdentifyRequest(BaseModel):
    email: Optional[StrictStr] = None
    phoneNumber: Optional[StrictStr] = None


class ConsolidatedContact(BaseModel):
    # field name is part of the published response contract
    primaryContatctId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ConsolidatedContact
