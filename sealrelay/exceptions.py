"""
Seal Relayer Exceptions

Error taxonomy for the relayer pipeline. Each class states whether a failed
stage may be retried and whether it is fatal to the work item.
"""


class RelayerException(Exception):
    """Base exception for the relayer."""
    retryable = False
    fatal = True


class MalformedSealBytes(RelayerException):
    """Seal fields or encoded seal bytes violate the fixed layout."""
    pass


class SealHashMismatch(MalformedSealBytes):
    """Declared seal hash does not match the hash of the seal fields."""
    pass


class MalformedPayload(RelayerException):
    """Guardian envelope or deposit payload cannot be decoded."""
    pass


class LedgerCallFailed(RelayerException):
    """
    A ledger round-trip failed.

    Retryable with bounded backoff; fatal once the attempt ceiling is reached
    (the raiser sets ``exhausted``).
    """
    retryable = True

    def __init__(self, message: str, *, ledger: str = "", attempts: int = 0, exhausted: bool = False):
        super().__init__(message)
        self.ledger = ledger
        self.attempts = attempts
        self.exhausted = exhausted

    @property
    def fatal(self) -> bool:  # type: ignore[override]
        return self.exhausted


class PollTimeout(RelayerException):
    """A polled external state did not arrive before the deadline."""
    retryable = True
    fatal = False

    def __init__(self, message: str, *, label: str = "", deadline: float = 0.0):
        super().__init__(message)
        self.label = label
        self.deadline = deadline


class PresignTimeout(PollTimeout):
    """Presign session did not reach Completed before the deadline."""
    pass


class SignTimeout(PollTimeout):
    """Sign session did not reach Completed before the deadline."""
    pass


class ConfirmationTimeout(PollTimeout):
    """Submitted transaction was not confirmed before the deadline."""
    pass


class SigningFailed(RelayerException):
    """Signing could not produce a signature after the allowed restarts."""
    pass


class AlreadyProcessed(RelayerException):
    """
    Idempotency short-circuit: the seal hash is already being driven or
    already completed. Not a failure.
    """
    fatal = False

    def __init__(self, seal_hash_hex: str, stage: str = ""):
        super().__init__(f"{seal_hash_hex} already processed ({stage or 'claimed'})")
        self.seal_hash_hex = seal_hash_hex
        self.stage = stage


class LeaseLost(AlreadyProcessed):
    """Another instance took over the seal hash after this one's lease lapsed."""

    def __init__(self, seal_hash_hex: str):
        super().__init__(seal_hash_hex, "lease lost")


class ReplayRejected(RelayerException):
    """The ledger already consumed this identifier with different evidence."""
    pass


class UnauthorizedCloser(RelayerException):
    """Relaying identity is not allowed to publish closures."""
    pass


class InvalidStatusTransition(RelayerException):
    """Work item status may only move forward."""
    pass


class ConfigurationError(RelayerException):
    """Configuration error."""
    pass
