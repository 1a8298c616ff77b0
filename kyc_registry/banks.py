"""
Bank Records

Member banks of the federation. A bank exists exactly while its record is
stored; removing a bank deletes the record, so every field then reads as
absent rather than as a zeroed value.
"""

from dataclasses import dataclass
from typing import Any, Dict

from .storage import StorageRecord


@dataclass
class Bank(StorageRecord):
    """
    Federation member bank, keyed by its address-like identifier
    """
    name: str
    registration_number: str
    complaints_reported: int = 0
    kyc_count: int = 0
    is_allowed_to_vote: bool = True

    @property
    def bank_id(self) -> str:
        return self.id

    def to_summary(self) -> Dict[str, Any]:
        """Public view used by log lines and event payloads"""
        return {
            "bank_id": self.id,
            "name": self.name,
            "registration_number": self.registration_number,
            "complaints_reported": self.complaints_reported,
            "kyc_count": self.kyc_count,
            "is_allowed_to_vote": self.is_allowed_to_vote,
        }
