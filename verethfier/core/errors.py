"""Domain error taxonomy.

Every error raised by the verification core derives from ``VerethfierError``
so the HTTP layer can map it to a status code in one place
(see ``verethfier.api.errors``).
"""

from __future__ import annotations


class VerethfierError(Exception):
    """Base class for all domain errors."""

    code = "VERIFICATION_ERROR"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(VerethfierError):
    """Malformed request or rule shape."""

    code = "VALIDATION_ERROR"


class SignatureError(VerethfierError):
    """Bad, expired, or mismatched typed-data signature."""

    code = "SIGNATURE_INVALID"


class NonceError(VerethfierError):
    """Nonce missing, expired, mismatched, or already consumed."""

    code = "NONCE_INVALID"


class RuleNotFoundError(VerethfierError):
    code = "RULE_NOT_FOUND"


class DuplicateRuleError(VerethfierError):
    """A rule with identical criteria already exists."""

    code = "DUPLICATE_RULE"

    def __init__(self, message: str = "", existing_rule_id: str | None = None) -> None:
        self.existing_rule_id = existing_rule_id
        super().__init__(message)


class OwnershipQueryError(VerethfierError):
    """The asset index is unreachable or returned something unusable."""

    code = "OWNERSHIP_QUERY_FAILED"


class RolePlatformError(VerethfierError):
    """The chat platform refused or failed a role mutation."""

    code = "ROLE_PLATFORM_FAILED"

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NoQualifyingAssetsError(VerethfierError):
    """Signature was fine but the wallet satisfies none of the candidate rules."""

    code = "NO_QUALIFYING_ASSETS"


class AssignmentStateError(VerethfierError):
    """Attempted a status transition out of a terminal state."""

    code = "ASSIGNMENT_STATE"
