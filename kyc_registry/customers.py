"""
Customer and KYC Request Records

Customers are registered by a bank and validated by the votes of the other
banks. A customer has at most one pending KYC request; the existence of the
request record is the pending state.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .storage import StorageRecord


@dataclass
class Customer(StorageRecord):
    """
    Customer keyed by username. kyc_status is derived from the vote tally
    and is never set directly.
    """
    data: str
    bank: str  # identifier of the owning bank
    kyc_status: bool = False
    up_votes: int = 0
    down_votes: int = 0

    @property
    def username(self) -> str:
        return self.id

    def to_summary(self) -> Dict[str, Any]:
        return {
            "username": self.id,
            "bank": self.bank,
            "kyc_status": self.kyc_status,
            "up_votes": self.up_votes,
            "down_votes": self.down_votes,
        }


@dataclass
class KycRequest(StorageRecord):
    """Pending KYC request for a customer, keyed by the customer's username"""
    bank: str  # identifier of the filing bank
    data: str  # customer data as supplied when the request was filed

    @property
    def username(self) -> str:
        return self.id


@dataclass
class VoteMarkers(StorageRecord):
    """Banks that have voted on a customer's current data"""
    voters: List[str] = field(default_factory=list)

    def has_voted(self, bank_id: str) -> bool:
        return bank_id in self.voters
