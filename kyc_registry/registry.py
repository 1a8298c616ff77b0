"""
KYC Registry Engine

Federated registry where member banks register customers, file KYC requests
and vote on each other's customer data. Vote tallies drive each customer's
KYC status; complaint counts drive each bank's voting eligibility. A single
administrator, fixed when the registry is created, manages membership.

Every operation checks all of its preconditions before writing anything,
runs under one registry-wide lock and inside a storage transaction, and
either commits completely or raises.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .banks import Bank
from .config import RegistryConfig, get_config
from .customers import Customer, KycRequest, VoteMarkers
from .errors import (
    RegistryError, NotAuthorized, InvalidBank, NotFound, AlreadyExists,
    NotEligible, AlreadyVoted, SelfVote, InvalidIdentifier, RegistryInvariantError
)
from .events import DomainEvent, EventDispatcher, EventPayload
from .keys import is_absent_key
from .logging_config import log_action, setup_logging
from .storage import StorageInterface, InMemoryStorage, create_storage
from .voting import determine_kyc_status, determine_bank_voting_status


STATE_RECORD_ID = "registry"


class KycRegistry:
    """
    Registry engine over banks, customers, KYC requests and vote markers
    """

    BANKS_TABLE = "banks"
    CUSTOMERS_TABLE = "customers"
    REQUESTS_TABLE = "kyc_requests"
    VOTES_TABLE = "vote_markers"
    STATE_TABLE = "registry_state"

    def __init__(
        self,
        admin_id: str,
        storage: Optional[StorageInterface] = None,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[RegistryConfig] = None
    ):
        if is_absent_key(admin_id):
            raise InvalidIdentifier("Administrator identity must not be the absent sentinel")

        config = config or get_config()

        self._admin_id = admin_id
        self.storage = storage if storage is not None else InMemoryStorage()
        if audit_trail is None and config.enable_audit_logging:
            audit_trail = AuditTrail(self.storage)
        self.audit_trail = audit_trail
        if event_dispatcher is None and config.enable_events:
            event_dispatcher = EventDispatcher()
        self.event_dispatcher = event_dispatcher

        self.rejection_threshold_percent = config.kyc_rejection_threshold_percent
        self.complaint_threshold_percent = config.complaint_threshold_percent
        self.min_banks_for_rejection_ratio = config.min_banks_for_rejection_ratio

        self._lock = threading.RLock()
        self.logger = logging.getLogger("kyc_registry.registry")

        self._init_state()

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def admin_id(self) -> str:
        return self._admin_id

    def is_admin(self, caller: str) -> bool:
        return caller == self._admin_id

    def is_valid_bank(self, bank_id: str) -> bool:
        """True if bank_id belongs to a registered bank"""
        return self.bank_exists(bank_id)

    # ------------------------------------------------------------------
    # Bank membership (administrator only)
    # ------------------------------------------------------------------

    def add_bank(self, caller: str, name: str, bank_id: str, registration_number: str) -> Bank:
        """
        Register a new member bank.

        The bank starts eligible to vote with zero complaints and zero KYC
        requests, and the federation size grows by one.

        Raises:
            NotAuthorized: caller is not the administrator
            InvalidIdentifier: bank_id or registration_number is the absent sentinel
            AlreadyExists: a bank is already registered at bank_id
        """
        with self._operation(caller, "add_bank", bank_id) as events:
            self._require_admin(caller)
            if is_absent_key(bank_id):
                raise InvalidIdentifier("Bank identifier must not be the absent sentinel")
            if is_absent_key(registration_number):
                raise InvalidIdentifier("Registration number must not be the absent sentinel")
            if self.bank_exists(bank_id):
                raise AlreadyExists(f"Bank {bank_id} already exists")

            now = datetime.now(timezone.utc)
            bank = Bank(
                id=bank_id,
                created_at=now,
                updated_at=now,
                name=name,
                registration_number=registration_number
            )
            self._save_bank(bank)

            state = self._load_state()
            state['total_banks'] += 1
            if bank_id not in state['bank_ids']:
                state['bank_ids'].append(bank_id)
            self._save_state(state)

            self._audit(AuditEventType.BANK_ADDED, "bank", bank_id, caller, {
                "name": name,
                "registration_number": registration_number,
                "total_banks": state['total_banks']
            })
            events.append(EventPayload(DomainEvent.BANK_ADDED, "bank", bank_id, bank.to_summary()))

            return bank

    def remove_bank(self, caller: str, bank_id: str) -> None:
        """
        Remove a member bank. Afterwards every field of the bank reads as
        absent and the federation size shrinks by one.

        Raises:
            NotAuthorized: caller is not the administrator
            NotFound: no bank is registered at bank_id
        """
        with self._operation(caller, "remove_bank", bank_id) as events:
            self._require_admin(caller)
            bank = self._require_bank(bank_id)

            self.storage.delete(self.BANKS_TABLE, bank_id)
            if self.storage.exists(self.BANKS_TABLE, bank_id):
                raise RegistryInvariantError(f"Bank {bank_id} still present after removal")

            state = self._load_state()
            state['total_banks'] -= 1
            self._save_state(state)

            self._audit(AuditEventType.BANK_REMOVED, "bank", bank_id, caller, {
                "name": bank.name,
                "total_banks": state['total_banks']
            })
            events.append(EventPayload(DomainEvent.BANK_REMOVED, "bank", bank_id, bank.to_summary()))

    def set_bank_voting_eligibility(self, caller: str, bank_id: str, allowed: bool) -> Bank:
        """
        Overwrite a bank's voting eligibility.

        Raises:
            NotAuthorized: caller is not the administrator
            NotFound: no bank is registered at bank_id
        """
        with self._operation(caller, "set_bank_voting_eligibility", bank_id) as events:
            self._require_admin(caller)
            bank = self._require_bank(bank_id)

            previous = bank.is_allowed_to_vote
            bank.is_allowed_to_vote = bool(allowed)
            bank.updated_at = datetime.now(timezone.utc)
            self._save_bank(bank)

            if previous != bank.is_allowed_to_vote:
                self._record_eligibility_change(bank, previous, caller, "administrator", events)

            return bank

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def add_customer(self, caller: str, username: str, data: str) -> Customer:
        """
        Register a customer owned by the calling bank. KYC status starts as
        not approved with an empty tally.

        Raises:
            InvalidBank: caller is not a registered bank
            InvalidIdentifier: username is the absent sentinel
            AlreadyExists: username is already taken
        """
        with self._operation(caller, "add_customer", username) as events:
            self._require_bank_caller(caller)
            if is_absent_key(username):
                raise InvalidIdentifier("Username must not be the absent sentinel")
            if self.customer_exists(username):
                raise AlreadyExists(f"Customer {username} already exists")

            now = datetime.now(timezone.utc)
            customer = Customer(
                id=username,
                created_at=now,
                updated_at=now,
                data=data,
                bank=caller
            )
            self._save_customer(customer)

            self._audit(AuditEventType.CUSTOMER_ADDED, "customer", username, caller, {"bank": caller})
            events.append(EventPayload(DomainEvent.CUSTOMER_ADDED, "customer", username, customer.to_summary()))

            return customer

    def modify_customer(self, caller: str, username: str, data: str) -> Customer:
        """
        Replace a customer's data and restart voting on it.

        Vote counts drop to zero, every vote marker for the username is
        cleared, the derived status is recomputed from the empty tally, and a
        pending KYC request (if any) is withdrawn.

        Raises:
            InvalidBank: caller is not a registered bank
            NotFound: no customer is registered under username
        """
        with self._operation(caller, "modify_customer", username) as events:
            self._require_bank_caller(caller)
            customer = self._require_customer(username)

            previous_status = customer.kyc_status
            customer.data = data
            customer.up_votes = 0
            customer.down_votes = 0
            customer.kyc_status = self._kyc_status_for(customer)
            customer.updated_at = datetime.now(timezone.utc)
            self._save_customer(customer)

            self.storage.delete(self.VOTES_TABLE, username)

            withdrawn = None
            request = self._load_request(username)
            if request is not None:
                withdrawn = self._withdraw_request(request, caller, events)

            self._audit(AuditEventType.CUSTOMER_MODIFIED, "customer", username, caller, {
                "votes_reset": True,
                "withdrawn_request_bank": withdrawn.bank if withdrawn else None
            })
            events.append(EventPayload(DomainEvent.CUSTOMER_MODIFIED, "customer", username, customer.to_summary()))
            if previous_status != customer.kyc_status:
                self._record_status_change(customer, previous_status, caller, events)

            return customer

    def view_customer(self, username: str) -> Customer:
        """
        Raises:
            NotFound: no customer is registered under username
        """
        with self._lock:
            return self._require_customer(username)

    def get_customer_status(self, username: str) -> bool:
        return self.view_customer(username).kyc_status

    # ------------------------------------------------------------------
    # KYC requests
    # ------------------------------------------------------------------

    def add_kyc_request(self, caller: str, username: str, data: str) -> KycRequest:
        """
        File a KYC request for an existing customer, opening it for votes.

        Raises:
            InvalidBank: caller is not a registered bank
            NotFound: no customer is registered under username
            AlreadyExists: the customer already has a pending request
        """
        with self._operation(caller, "add_kyc_request", username) as events:
            bank = self._require_bank_caller(caller)
            self._require_customer(username)
            if self.kyc_request_exists(username):
                raise AlreadyExists(f"KYC request for {username} already exists")

            now = datetime.now(timezone.utc)
            request = KycRequest(
                id=username,
                created_at=now,
                updated_at=now,
                bank=caller,
                data=data
            )
            self.storage.save(self.REQUESTS_TABLE, username, request.to_dict())

            bank.kyc_count += 1
            bank.updated_at = now
            self._save_bank(bank)

            self._audit(AuditEventType.KYC_REQUEST_ADDED, "kyc_request", username, caller, {
                "bank": caller,
                "bank_kyc_count": bank.kyc_count
            })
            events.append(EventPayload(DomainEvent.KYC_REQUEST_ADDED, "kyc_request", username, {"bank": caller}))

            return request

    def remove_kyc_request(self, caller: str, username: str) -> None:
        """
        Withdraw the pending KYC request for a customer.

        The filing bank's request count is decremented, whichever registered
        bank performs the withdrawal.

        Raises:
            NotFound: the customer has no pending request
            InvalidBank: caller is not a registered bank
        """
        with self._operation(caller, "remove_kyc_request", username) as events:
            request = self._load_request(username)
            if request is None:
                raise NotFound(f"KYC request for {username} not found")
            self._require_bank_caller(caller)

            self._withdraw_request(request, caller, events)

    def view_kyc_request(self, username: str) -> KycRequest:
        """
        Raises:
            NotFound: the customer has no pending request
        """
        with self._lock:
            request = self._load_request(username)
            if request is None:
                raise NotFound(f"KYC request for {username} not found")
            return request

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def up_vote_customer(self, caller: str, username: str) -> Customer:
        """
        Vote to approve a customer's current data.

        Raises:
            InvalidBank: caller is not a registered bank
            NotEligible: caller is barred from voting
            AlreadyVoted: caller already voted on this data
            NotFound: customer or pending request is absent
            SelfVote: caller owns the customer
        """
        return self._cast_vote(caller, username, approve=True)

    def down_vote_customer(self, caller: str, username: str) -> Customer:
        """Vote to reject a customer's current data. Raises as up_vote_customer."""
        return self._cast_vote(caller, username, approve=False)

    def has_voted(self, username: str, bank_id: str) -> bool:
        with self._lock:
            return self._load_markers(username).has_voted(bank_id)

    def _cast_vote(self, caller: str, username: str, approve: bool) -> Customer:
        action = "up_vote_customer" if approve else "down_vote_customer"
        with self._operation(caller, action, username) as events:
            bank = self._require_bank_caller(caller)
            if not bank.is_allowed_to_vote:
                raise NotEligible(f"Bank {caller} is not allowed to vote")
            markers = self._load_markers(username)
            if markers.has_voted(caller):
                raise AlreadyVoted(f"Bank {caller} already voted on {username}")
            customer = self._require_customer(username)
            if not self.kyc_request_exists(username):
                raise NotFound(f"KYC request for {username} not found")
            if customer.bank == caller:
                raise SelfVote(f"Bank {caller} cannot vote on its own customer {username}")

            now = datetime.now(timezone.utc)
            previous_status = customer.kyc_status
            if approve:
                customer.up_votes += 1
            else:
                customer.down_votes += 1
            customer.kyc_status = self._kyc_status_for(customer)
            customer.updated_at = now
            self._save_customer(customer)

            markers.voters.append(caller)
            markers.updated_at = now
            self.storage.save(self.VOTES_TABLE, username, markers.to_dict())

            self._audit(
                AuditEventType.CUSTOMER_UPVOTED if approve else AuditEventType.CUSTOMER_DOWNVOTED,
                "customer", username, caller,
                {"up_votes": customer.up_votes, "down_votes": customer.down_votes}
            )
            if previous_status != customer.kyc_status:
                self._record_status_change(customer, previous_status, caller, events)

            return customer

    # ------------------------------------------------------------------
    # Complaints
    # ------------------------------------------------------------------

    def report_bank(self, caller: str, bank_id: str) -> Bank:
        """
        File a complaint against a bank and recompute its voting eligibility.

        Raises:
            NotFound: no bank is registered at bank_id
        """
        with self._operation(caller, "report_bank", bank_id) as events:
            bank = self._require_bank(bank_id)

            previous = bank.is_allowed_to_vote
            bank.complaints_reported += 1
            bank.is_allowed_to_vote = determine_bank_voting_status(
                self.total_banks,
                bank.complaints_reported,
                self.complaint_threshold_percent
            )
            bank.updated_at = datetime.now(timezone.utc)
            self._save_bank(bank)

            self._audit(AuditEventType.BANK_REPORTED, "bank", bank_id, caller, {
                "complaints_reported": bank.complaints_reported
            })
            if previous != bank.is_allowed_to_vote:
                self._record_eligibility_change(bank, previous, caller, "complaints", events)

            return bank

    def get_bank_complaints(self, bank_id: str) -> int:
        return self.view_bank_details(bank_id).complaints_reported

    def get_bank_kyc_count(self, bank_id: str) -> int:
        return self.view_bank_details(bank_id).kyc_count

    def is_bank_allowed_to_vote(self, bank_id: str) -> bool:
        return self.view_bank_details(bank_id).is_allowed_to_vote

    def view_bank_details(self, bank_id: str) -> Bank:
        """
        Raises:
            NotFound: no bank is registered at bank_id
        """
        with self._lock:
            return self._require_bank(bank_id)

    # ------------------------------------------------------------------
    # Existence and registry state
    # ------------------------------------------------------------------

    def bank_exists(self, bank_id: str) -> bool:
        return not is_absent_key(bank_id) and self.storage.exists(self.BANKS_TABLE, bank_id)

    def customer_exists(self, username: str) -> bool:
        return not is_absent_key(username) and self.storage.exists(self.CUSTOMERS_TABLE, username)

    def kyc_request_exists(self, username: str) -> bool:
        return not is_absent_key(username) and self.storage.exists(self.REQUESTS_TABLE, username)

    @property
    def total_banks(self) -> int:
        with self._lock:
            return self._load_state()['total_banks']

    def list_banks(self) -> List[Bank]:
        """Registered banks in registration order"""
        with self._lock:
            banks = []
            for bank_id in self._load_state()['bank_ids']:
                bank = self._load_bank(bank_id)
                if bank is not None:
                    banks.append(bank)
            return banks

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, caller: str, action: str, resource: str):
        """
        Serialize a mutating operation, run it in one storage transaction and
        publish its domain events once it has committed.
        """
        events: List[EventPayload] = []
        with self._lock:
            try:
                with self.storage.atomic():
                    yield events
            except RegistryError as e:
                log_action(
                    self.logger, "warning", f"{action} rejected: {e}",
                    user_id=caller, action=action, resource=resource,
                    extra={"error_code": e.error_code}
                )
                raise
            except RegistryInvariantError:
                self.logger.critical(f"{action} on {resource} violated a registry invariant", exc_info=True)
                raise

            log_action(self.logger, "info", f"{action} committed",
                       user_id=caller, action=action, resource=resource)

            if self.event_dispatcher is not None:
                for event in events:
                    self.event_dispatcher.publish(event)

    def _init_state(self) -> None:
        state = self.storage.load(self.STATE_TABLE, STATE_RECORD_ID)
        if state is None:
            self.storage.save(self.STATE_TABLE, STATE_RECORD_ID, {
                "admin_id": self._admin_id,
                "total_banks": 0,
                "bank_ids": []
            })
        elif state.get("admin_id") != self._admin_id:
            raise NotAuthorized("Registry storage belongs to a different administrator")

    def _load_state(self) -> Dict[str, Any]:
        state = self.storage.load(self.STATE_TABLE, STATE_RECORD_ID)
        if state is None:
            raise RegistryInvariantError("Registry state record is missing")
        return state

    def _save_state(self, state: Dict[str, Any]) -> None:
        if state['total_banks'] < 0:
            raise RegistryInvariantError("Total bank count went negative")
        self.storage.save(self.STATE_TABLE, STATE_RECORD_ID, state)

    def _require_admin(self, caller: str) -> None:
        if not self.is_admin(caller):
            raise NotAuthorized(f"{caller} is not the registry administrator")

    def _require_bank_caller(self, caller: str) -> Bank:
        bank = self._load_bank(caller)
        if bank is None:
            raise InvalidBank(f"{caller} is not a registered bank")
        return bank

    def _require_bank(self, bank_id: str) -> Bank:
        bank = self._load_bank(bank_id)
        if bank is None:
            raise NotFound(f"Bank {bank_id} not found")
        return bank

    def _require_customer(self, username: str) -> Customer:
        if is_absent_key(username):
            raise NotFound(f"Customer {username!r} not found")
        data = self.storage.load(self.CUSTOMERS_TABLE, username)
        if data is None:
            raise NotFound(f"Customer {username} not found")
        return Customer.from_dict(data)

    def _load_bank(self, bank_id: str) -> Optional[Bank]:
        if is_absent_key(bank_id):
            return None
        data = self.storage.load(self.BANKS_TABLE, bank_id)
        if data is None:
            return None
        return Bank.from_dict(data)

    def _load_request(self, username: str) -> Optional[KycRequest]:
        if is_absent_key(username):
            return None
        data = self.storage.load(self.REQUESTS_TABLE, username)
        if data is None:
            return None
        return KycRequest.from_dict(data)

    def _load_markers(self, username: str) -> VoteMarkers:
        data = self.storage.load(self.VOTES_TABLE, username)
        if data is None:
            now = datetime.now(timezone.utc)
            return VoteMarkers(id=username, created_at=now, updated_at=now)
        return VoteMarkers.from_dict(data)

    def _save_bank(self, bank: Bank) -> None:
        self.storage.save(self.BANKS_TABLE, bank.id, bank.to_dict())

    def _save_customer(self, customer: Customer) -> None:
        self.storage.save(self.CUSTOMERS_TABLE, customer.id, customer.to_dict())

    def _withdraw_request(self, request: KycRequest, caller: str, events: List[EventPayload]) -> KycRequest:
        """Delete a pending request and reverse the filer's request count"""
        self.storage.delete(self.REQUESTS_TABLE, request.username)
        if self.storage.exists(self.REQUESTS_TABLE, request.username):
            raise RegistryInvariantError(f"KYC request for {request.username} still present after removal")

        # The filer may have been removed (or removed and re-added) since filing
        filer = self._load_bank(request.bank)
        if filer is not None and filer.kyc_count > 0:
            filer.kyc_count -= 1
            filer.updated_at = datetime.now(timezone.utc)
            self._save_bank(filer)

        self._audit(AuditEventType.KYC_REQUEST_REMOVED, "kyc_request", request.username, caller, {
            "bank": request.bank,
            "withdrawn_by": caller
        })
        events.append(EventPayload(DomainEvent.KYC_REQUEST_REMOVED, "kyc_request", request.username, {
            "bank": request.bank,
            "withdrawn_by": caller
        }))
        return request

    def _kyc_status_for(self, customer: Customer) -> bool:
        return determine_kyc_status(
            self.total_banks,
            customer.up_votes,
            customer.down_votes,
            self.rejection_threshold_percent,
            self.min_banks_for_rejection_ratio
        )

    def _record_status_change(self, customer: Customer, previous: bool, caller: str,
                              events: List[EventPayload]) -> None:
        self._audit(AuditEventType.KYC_STATUS_CHANGED, "customer", customer.username, caller, {
            "old_status": previous,
            "new_status": customer.kyc_status,
            "up_votes": customer.up_votes,
            "down_votes": customer.down_votes
        })
        events.append(EventPayload(
            DomainEvent.CUSTOMER_KYC_CHANGED, "customer", customer.username, customer.to_summary()
        ))

    def _record_eligibility_change(self, bank: Bank, previous: bool, caller: str, reason: str,
                                   events: List[EventPayload]) -> None:
        self._audit(AuditEventType.BANK_VOTING_STATUS_CHANGED, "bank", bank.id, caller, {
            "old_status": previous,
            "new_status": bank.is_allowed_to_vote,
            "reason": reason
        })
        events.append(EventPayload(DomainEvent.BANK_ELIGIBILITY_CHANGED, "bank", bank.id, bank.to_summary()))

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               caller: str, metadata: Dict[str, Any]) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=caller
            )


def create_registry(config: Optional[RegistryConfig] = None,
                    storage: Optional[StorageInterface] = None) -> KycRegistry:
    """
    Build a registry from configuration: logging, storage backend and the
    fixed administrator identity.
    """
    config = config or get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)

    if storage is None:
        storage = create_storage(config.database_url)

    registry = KycRegistry(config.admin_id, storage=storage, config=config)
    log_action(logger, "info", "KYC registry initialised",
               user_id=config.admin_id, action="create_registry",
               extra={"storage": type(storage).__name__, "total_banks": registry.total_banks})
    return registry
