class IssuanceError(Exception):
    """Base class for every failure the issuance flow surfaces to callers."""

    retryable = False


class ValidationError(IssuanceError):
    """Descriptor fields or on-chain state do not match what issuance expects."""


class EncodingError(IssuanceError):
    """Metadata strings exceed the maximum field length."""


class BuildError(IssuanceError):
    """Numeric fields fall outside what the token program can represent."""


class NetworkQueryError(IssuanceError):
    """Rent or blockhash lookup failed before anything was submitted."""

    retryable = True


class NetworkError(IssuanceError):
    """Submission was rejected or never confirmed.

    Retrying means restarting from the failed step with a fresh blockhash;
    a failed CreateMint step must be retried with a new mint keypair.
    """

    retryable = True


def describe(exc: BaseException) -> dict:
    return {"type": type(exc).__name__, "detail": str(exc)}


class ContentStoreError(RuntimeError):
    """Pinning service upload failed; raised before any issuance starts."""
