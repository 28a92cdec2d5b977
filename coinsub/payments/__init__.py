"""Payment address issuance and on-chain balance verification."""

from .issuer import AddressIssuer, IssuanceError, IssuedAddress, sign_parameters, verify_parameters
from .verification import (
    AccountBalance,
    BalanceVerifier,
    LedgerBalance,
    Unavailable,
    VerificationUnavailable,
    Verified,
)

__all__ = [
    "AccountBalance",
    "AddressIssuer",
    "BalanceVerifier",
    "IssuanceError",
    "IssuedAddress",
    "LedgerBalance",
    "Unavailable",
    "VerificationUnavailable",
    "Verified",
    "sign_parameters",
    "verify_parameters",
]
