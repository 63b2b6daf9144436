"""
Error Taxonomy for the Settlement Rail

- AuthorizationError: wrong identity invoking a restricted operation
- ValidationError: malformed input, rejected before any mutation
- StateError: precondition failures for operations without a skip policy

Payment collaborator failures are not wrapped here; they propagate with
the collaborator's own exception type.
"""


class LedgerError(Exception):
    """Base class for all settlement rail errors."""
    pass


class AuthorizationError(LedgerError):
    pass


class Unauthorized(AuthorizationError):
    """Raised when a caller does not hold the role an operation requires."""

    def __init__(self, caller: str, role: str):
        self.caller = caller
        self.role = role
        super().__init__(f"{caller or '<anonymous>'} is not the {role.lower()}")


class ValidationError(LedgerError):
    pass


class InvalidEpoch(ValidationError):
    """Raised for a zero epoch or one not above the entity's reported high-water mark."""

    def __init__(self, entity_id: str, epoch: int, max_reported_epoch: int):
        self.entity_id = entity_id
        self.epoch = epoch
        self.max_reported_epoch = max_reported_epoch
        super().__init__(
            f"Invalid epoch {epoch} for {entity_id} (max reported {max_reported_epoch})"
        )


class InvalidUsageAmount(ValidationError):
    pass


class InvalidRate(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class InvalidEntityId(ValidationError):
    pass


class AmountOverflow(ValidationError):
    pass


class StateError(LedgerError):
    pass


class UninitializedEntity(StateError):
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"No usage has ever been reported for {entity_id}")


class NoUsageToSettle(StateError):
    def __init__(self, entity_id: str, category: str):
        self.entity_id = entity_id
        self.category = category
        super().__init__(f"Nothing to settle for {entity_id} ({category})")


class RatesLocked(StateError):
    pass


class ConfigurationError(LedgerError):
    pass
