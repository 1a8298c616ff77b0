"""
Registry Errors

Every reportable precondition failure derives from RegistryError, which is a
ValueError so callers that already handle ValueError keep working.
RegistryInvariantError signals a bug in the engine itself and is deliberately
kept outside that hierarchy.
"""


class RegistryError(ValueError):
    """Base exception for precondition failures"""
    error_code = "registry_error"


class NotAuthorized(RegistryError):
    """Caller lacks administrator rights"""
    error_code = "not_authorized"


class InvalidBank(RegistryError):
    """Caller is not a registered bank"""
    error_code = "invalid_bank"


class NotFound(RegistryError):
    """Bank, customer or KYC request is absent"""
    error_code = "not_found"


class AlreadyExists(RegistryError):
    """Duplicate key on create"""
    error_code = "already_exists"


class NotEligible(RegistryError):
    """Bank is barred from voting"""
    error_code = "not_eligible"


class AlreadyVoted(RegistryError):
    """Bank already voted on the customer's current data"""
    error_code = "already_voted"


class SelfVote(RegistryError):
    """Bank attempted to vote on its own customer"""
    error_code = "self_vote"


class InvalidIdentifier(RegistryError):
    """Identifier is the reserved absent sentinel"""
    error_code = "invalid_identifier"


class RegistryInvariantError(RuntimeError):
    """Internal consistency check failed; the registry state cannot be trusted"""
    pass
