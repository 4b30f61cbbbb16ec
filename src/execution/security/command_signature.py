import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from src.execution.domain.command import CommandEnvelope
from src.execution.security.canonical_json import canonicalize

logger = logging.getLogger(__name__)


FIELD_ORDER_V2 = ("id", "project_id", "node_id", "command", "created_at", "payload")
FIELD_ORDER_V1 = ("id", "project_id", "node_id", "command", "payload", "created_at")


@dataclass(frozen=True)
class SignatureScheme:
    """
    One way of turning an envelope into an HMAC-SHA256 signature.
    Schemes differ only in field order, separator and digest encoding.
    """

    name: str
    field_order: Tuple[str, ...] = FIELD_ORDER_V2
    separator: str = "|"
    encoding: str = "hex"

    def base_string(self, envelope: CommandEnvelope) -> str:
        parts = []
        for name in self.field_order:
            if name == "payload":
                parts.append(canonicalize(envelope.payload))
            else:
                parts.append(str(getattr(envelope, name)))
        return self.separator.join(parts)

    def sign(self, secret: str, envelope: CommandEnvelope) -> str:
        digest = hmac.new(
            secret.encode("utf-8"),
            self.base_string(envelope).encode("utf-8"),
            hashlib.sha256,
        ).digest()
        if self.encoding == "hex":
            return digest.hex()
        if self.encoding == "base64":
            return base64.b64encode(digest).decode("ascii")
        raise ValueError(f"Unsupported digest encoding: {self.encoding}")


# Priority order. The first entry is what issuers sign with today; the rest
# only exist so rows signed before a migration still verify.
DEFAULT_SCHEMES: Tuple[SignatureScheme, ...] = (
    SignatureScheme(name="v2-hex"),
    SignatureScheme(name="v1-hex", field_order=FIELD_ORDER_V1),
    SignatureScheme(name="v2-base64", encoding="base64"),
)


def constant_time_equals(provided: str, expected: str) -> bool:
    provided_bytes = provided.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    if len(provided_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(provided_bytes, expected_bytes)


def sign(secret: str, envelope: CommandEnvelope, schemes: Sequence[SignatureScheme] = DEFAULT_SCHEMES) -> str:
    return schemes[0].sign(secret, envelope)


def match_scheme(
    secret: str,
    envelope: CommandEnvelope,
    signature: object,
    schemes: Sequence[SignatureScheme] = DEFAULT_SCHEMES,
) -> Optional[SignatureScheme]:
    if not isinstance(signature, str) or not signature:
        return None
    for scheme in schemes:
        try:
            expected = scheme.sign(secret, envelope)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Signature scheme {scheme.name} could not encode command {envelope.id}: {exc}")
            continue
        if constant_time_equals(signature, expected):
            return scheme
    return None


def verify(
    secret: str,
    envelope: CommandEnvelope,
    signature: object,
    schemes: Sequence[SignatureScheme] = DEFAULT_SCHEMES,
) -> bool:
    return match_scheme(secret, envelope, signature, schemes) is not None


class CommandSignatureVerifier:
    """
    Pure predicate over stored command rows; never mutates anything.
    """

    def __init__(self, secret: str, schemes: Sequence[SignatureScheme] = DEFAULT_SCHEMES):
        if not schemes:
            raise ValueError("At least one signature scheme is required")
        self._secret = secret
        self.schemes = tuple(schemes)

    def sign(self, envelope: CommandEnvelope) -> str:
        return sign(self._secret, envelope, self.schemes)

    def verify(self, envelope: CommandEnvelope, signature: object) -> bool:
        return self.match(envelope, signature) is not None

    def match(self, envelope: CommandEnvelope, signature: object) -> Optional[SignatureScheme]:
        scheme = match_scheme(self._secret, envelope, signature, self.schemes)
        if scheme is not None and scheme is not self.schemes[0]:
            logger.info(f"Command {envelope.id} verified with legacy signature scheme {scheme.name}")
        return scheme
