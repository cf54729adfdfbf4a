from typing import Optional

# Error codes returned by mints, see NUT error codes
OUTPUT_ALREADY_SIGNED = 10002
TOKEN_VERIFICATION_FAILED = 10003
TOKEN_ALREADY_SPENT = 11001
TRANSACTION_NOT_BALANCED = 11002
UNIT_NOT_SUPPORTED = 11005
KEYSET_UNKNOWN = 12001
KEYSET_INACTIVE = 12002
QUOTE_NOT_PAID = 20001
QUOTE_ALREADY_ISSUED = 20002
LIGHTNING_PAYMENT_FAILED = 20004
QUOTE_PENDING = 20005
QUOTE_EXPIRED = 20007
QUOTE_SIGNATURE_INVALID = 20008

# older mints only tell us in the message
ALREADY_ISSUED_MESSAGES = (
    "outputs have already been signed before",
    "mint quote already issued.",
)


class CashuError(Exception):
    code: int
    detail: str

    def __init__(self, detail, code=0):
        super().__init__(detail)
        self.code = code
        self.detail = detail


class MintOperationError(CashuError):
    """Error response returned by a mint for a request."""

    def __init__(self, detail: str, code: int = 0):
        super().__init__(detail, code=code)

    def __str__(self):
        message = f"Mint Error: {self.detail}"
        if self.code:
            message += f" (Code: {self.code})"
        return message


class RateLimitError(CashuError):
    detail = "rate limit exceeded"
    code = 429

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class OutputsAlreadySignedError(CashuError):
    detail = "outputs have already been signed before."
    code = OUTPUT_ALREADY_SIGNED

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class QuoteNotPaidError(CashuError):
    detail = "quote not paid"
    code = QUOTE_NOT_PAID

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class QuoteAlreadyIssuedError(CashuError):
    detail = "mint quote already issued."
    code = QUOTE_ALREADY_ISSUED

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class QuoteSignatureInvalidError(CashuError):
    detail = "signature for mint request invalid"
    code = QUOTE_SIGNATURE_INVALID

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class TokenAlreadySpentError(CashuError):
    detail = "Token already spent."
    code = TOKEN_ALREADY_SPENT

    def __init__(self):
        super().__init__(self.detail, code=self.code)


class KeysetNotFoundError(CashuError):
    detail = "keyset not found"
    code = KEYSET_UNKNOWN

    def __init__(self, keyset_id: Optional[str] = None):
        super().__init__(self.detail, code=self.code)
        if keyset_id:
            self.detail = f"{self.detail}: {keyset_id}"


class LightningPaymentFailedError(CashuError):
    detail = "Lightning payment failed"
    code = LIGHTNING_PAYMENT_FAILED

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


def is_already_issued_error(exc: BaseException) -> bool:
    """Whether a mint error means the outputs were already signed by the mint.

    Mints following NUT-00 error codes return code 10002 or 20002. For mints
    that don't, we fall back to matching the message.
    """
    if isinstance(exc, CashuError) and exc.code in (
        OUTPUT_ALREADY_SIGNED,
        QUOTE_ALREADY_ISSUED,
    ):
        return True
    detail = exc.detail if isinstance(exc, CashuError) else str(exc)
    message = str(detail).lower()
    return any(m in message for m in ALREADY_ISSUED_MESSAGES)


class ClaimError(CashuError):
    detail = "claim error"
    code = 0

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail or self.detail, code=code or self.code)


class VersionConflictError(ClaimError):
    """A versioned write was rejected because the row changed since it was read."""

    def __init__(self, entity: str, key: str, version: int):
        super().__init__(
            f"{entity} {key} was modified concurrently (expected version {version})"
        )
        self.entity = entity
        self.key = key
        self.version = version


class NotFoundError(ClaimError):
    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} {key} not found")
        self.entity = entity
        self.key = key


class QuoteStateError(ClaimError):
    detail = "invalid state transition"


class ClaimValidationError(ClaimError):
    detail = "This ecash cannot be claimed."


class AmountTooSmallError(ClaimError):
    detail = "Amount is too small"


class QuoteResolutionError(ClaimError):
    def __init__(self, attempts: int):
        super().__init__(f"Failed to find valid quotes after {attempts} attempts.")
        self.attempts = attempts


class CrossMintClaimError(ClaimError):
    detail = "Cannot swap a token to a different mint or unit"


class SessionClosedError(ClaimError):
    detail = "Session has been closed"
