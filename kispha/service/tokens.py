"""Stateless identity tokens.

A token is the standard base64 form of the AES-128-CBC (PKCS#7) encryption of
the ASCII string ``"{subject_id}\\|{issued_at_ms}"`` under a fixed key and IV.
There is no version byte; the same subject and millisecond always produce the
same token.
"""

from __future__ import annotations

import base64
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from kispha.logging import get_logger
from kispha.service.errors import ConfigurationError, ErrorKind, Outcome

logger = get_logger(__name__)

# Literal backslash followed by a pipe
SEPARATOR = "\\|"
KEY_LENGTH = 16
DEFAULT_VALIDITY_MS = 60 * 60 * 1000

_NUMERIC_FIELD = re.compile(r"[+-]?\d+", re.ASCII)


def current_millis() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class TokenKeys:
    """AES key and IV, each exactly 16 bytes."""

    key: bytes
    iv: bytes

    def __post_init__(self) -> None:
        if len(self.key) != KEY_LENGTH:
            logger.error("token_key_invalid", length=len(self.key))
            raise ConfigurationError(
                f"token key must be exactly {KEY_LENGTH} bytes, got {len(self.key)}"
            )
        if len(self.iv) != KEY_LENGTH:
            logger.error("token_iv_invalid", length=len(self.iv))
            raise ConfigurationError(
                f"token IV must be exactly {KEY_LENGTH} bytes, got {len(self.iv)}"
            )

    @classmethod
    def from_strings(cls, key: str, iv: str) -> "TokenKeys":
        return cls(key=key.encode("utf-8"), iv=iv.encode("utf-8"))


@dataclass(frozen=True)
class TokenClaim:
    subject_id: int
    issued_at_ms: int


class TokenCodec:
    """Encodes ``(subject_id, issued_at_ms)`` pairs to opaque strings and back."""

    def __init__(self, keys: TokenKeys) -> None:
        self._keys = keys

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._keys.key), modes.CBC(self._keys.iv))

    def encode(self, subject_id: int, issued_at_ms: int) -> str:
        raw = f"{subject_id}{SEPARATOR}{issued_at_ms}".encode("ascii")
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(raw) + padder.finalize()
        encryptor = self._cipher().encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        token = base64.b64encode(ciphertext).decode("ascii")
        logger.debug("token_encoded", subject_id=subject_id, issued_at_ms=issued_at_ms)
        return token

    def decode(self, token: str) -> Outcome[TokenClaim]:
        if not token:
            return Outcome.failure(ErrorKind.MALFORMED_TOKEN)
        try:
            ciphertext = base64.b64decode(token, validate=True)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            raw = (unpadder.update(padded) + unpadder.finalize()).decode("ascii")
        except (ValueError, TypeError) as exc:
            # binascii.Error and UnicodeDecodeError are both ValueErrors
            logger.warning("token_decode_failed", error=str(exc))
            return Outcome.failure(ErrorKind.MALFORMED_TOKEN)

        parts = raw.split(SEPARATOR)
        if len(parts) != 2 or not all(_NUMERIC_FIELD.fullmatch(p) for p in parts):
            logger.warning("token_payload_malformed", field_count=len(parts))
            return Outcome.failure(ErrorKind.MALFORMED_TOKEN)
        return Outcome.success(TokenClaim(subject_id=int(parts[0]), issued_at_ms=int(parts[1])))


class TokenValidator:
    """Checks subject and freshness of a token and mints its replacement."""

    def __init__(
        self,
        codec: TokenCodec,
        *,
        validity_ms: int = DEFAULT_VALIDITY_MS,
        clock: Callable[[], int] = current_millis,
    ) -> None:
        self.codec = codec
        self.validity_ms = validity_ms
        self._clock = clock

    def now_ms(self) -> int:
        return self._clock()

    def issue(self, subject_id: int, previous_token: Optional[str] = None) -> str:
        """Mint a token for ``subject_id``.

        When ``previous_token`` belongs to the same subject the new token is
        stamped after it, so a superseded token is never minted again.
        """
        issued_at = self.now_ms()
        if previous_token:
            previous = self.codec.decode(previous_token)
            if previous.ok and previous.value.subject_id == subject_id:
                issued_at = max(issued_at, previous.value.issued_at_ms + 1)
        return self.codec.encode(subject_id, issued_at)

    def check_fresh_and_rotate(self, token: str, expected_subject_id: int) -> Outcome[str]:
        decoded = self.codec.decode(token)
        if not decoded.ok:
            return Outcome.failure(ErrorKind.INVALID)
        claim = decoded.value
        if claim.subject_id != expected_subject_id:
            logger.warning(
                "token_subject_mismatch",
                token_subject_id=claim.subject_id,
                expected_subject_id=expected_subject_id,
            )
            return Outcome.failure(ErrorKind.SUBJECT_MISMATCH)

        now = self.now_ms()
        age = now - claim.issued_at_ms
        if age > self.validity_ms:
            logger.warning(
                "token_expired",
                subject_id=expected_subject_id,
                issued_at_ms=claim.issued_at_ms,
                age_ms=age,
            )
            return Outcome.failure(ErrorKind.EXPIRED)

        # A rotation within the same millisecond would reproduce the presented token
        issued_at = max(now, claim.issued_at_ms + 1)
        logger.debug("token_rotated", subject_id=expected_subject_id)
        return Outcome.success(self.codec.encode(expected_subject_id, issued_at))
