from src.execution.security.canonical_json import canonicalize
from src.execution.security.command_signature import (
    DEFAULT_SCHEMES,
    CommandSignatureVerifier,
    SignatureScheme,
    sign,
    verify,
)

__all__ = [
    "DEFAULT_SCHEMES",
    "CommandSignatureVerifier",
    "SignatureScheme",
    "canonicalize",
    "sign",
    "verify",
]
