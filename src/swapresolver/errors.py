"""Exception hierarchy for the resolver core.

Stores and validators raise these. Engines never let them escape towards
the coordinator for chain-facing failures; those are returned as typed
results instead (see ``swapresolver.chains.base.CallResult``).
"""


class ResolverError(Exception):
    """Base class for all resolver errors."""


class ValidationError(ResolverError):
    """Input rejected at the boundary, before any state mutation."""


class OrderValidationError(ValidationError):
    """Malformed order or pending-order document."""


class TimelockOrderError(ValidationError):
    """Timelock offsets violate the required ordering."""


class SecretMismatchError(ValidationError):
    """Secret does not hash to the expected hashlock."""


class SecretConflict(ResolverError):
    """A different secret is already stored for this hashlock or order."""

    def __init__(self, hashlock: str, message: str = ""):
        self.hashlock = hashlock
        super().__init__(message or f"Conflicting secret for hashlock {hashlock}")


class NotFound(ResolverError):
    """Requested record does not exist."""


class SecretNotFound(NotFound):
    def __init__(self, hashlock: str):
        self.hashlock = hashlock
        super().__init__(f"No secret stored for hashlock {hashlock}")


class SwapNotFound(NotFound):
    def __init__(self, order_hash: str):
        self.order_hash = order_hash
        super().__init__(f"Swap {order_hash} not found")


class AlreadyExists(ResolverError):
    """Record with the same key is already tracked."""


class SwapAlreadyExists(AlreadyExists):
    def __init__(self, order_hash: str):
        self.order_hash = order_hash
        super().__init__(f"Swap {order_hash} is already tracked")


class InvalidTransition(ResolverError):
    """Requested status edge is not in the transition table."""

    def __init__(self, order_hash: str, current: str, requested: str, message: str = ""):
        self.order_hash = order_hash
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Swap {order_hash}: transition {current} -> {requested} not allowed"
        )


class EscrowAlreadySet(InvalidTransition):
    """An escrow address is write-once."""

    def __init__(self, order_hash: str, field: str, current: str, requested: str):
        self.field = field
        super().__init__(
            order_hash,
            current,
            requested,
            f"Swap {order_hash}: {field} already set to {current}, refusing {requested}",
        )


class LeaseHeldError(ResolverError):
    """Another live coordinator instance holds the resolver lease."""

    def __init__(self, identity: str, holder: str):
        self.identity = identity
        self.holder = holder
        super().__init__(f"Resolver {identity} is already leased by instance {holder}")


class UnknownChainError(ResolverError):
    """No chain client registered for the chain id."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id
        super().__init__(f"No chain client registered for chain {chain_id}")
