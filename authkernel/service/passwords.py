from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)
from argon2.low_level import ARGON2_VERSION

from authkernel.logging import get_logger

logger = get_logger(__name__)

_PARAMS_RE = re.compile(r"^m=(\d+),t=(\d+),p=(\d+)$")
_VERSION_RE = re.compile(r"^v=(\d+)$")


class HashFormatError(ValueError):
    """A stored password hash is not a well-formed argon2id string."""


class KDFError(RuntimeError):
    """The key derivation function failed to produce a hash."""


@dataclass(frozen=True)
class HashParameters:
    memory_cost: int = 64 * 1024
    time_cost: int = 3
    parallelism: int = 2
    salt_len: int = 16
    hash_len: int = 32


def _decode_b64(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.b64decode(segment + padding, validate=True)


def parse_encoded_hash(encoded: str) -> tuple[int, HashParameters]:
    """Split ``$argon2id$v=..$m=..,t=..,p=..$salt$hash`` into version and parameters.

    Raises ``HashFormatError`` when the string has the wrong number of fields,
    names another algorithm, or carries unparsable version, parameter or
    base64 segments.
    """
    if not isinstance(encoded, str):
        raise HashFormatError("encoded hash must be a string")
    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != "":
        raise HashFormatError("invalid hash format")
    _, algorithm, version_seg, params_seg, salt_seg, hash_seg = parts
    if algorithm != "argon2id":
        raise HashFormatError("unsupported hash algorithm")
    version_match = _VERSION_RE.match(version_seg)
    if not version_match:
        raise HashFormatError("invalid hash version")
    params_match = _PARAMS_RE.match(params_seg)
    if not params_match:
        raise HashFormatError("invalid hash parameters")
    try:
        salt = _decode_b64(salt_seg)
        digest = _decode_b64(hash_seg)
    except (binascii.Error, ValueError) as exc:
        raise HashFormatError("invalid hash encoding") from exc
    if not salt or not digest:
        raise HashFormatError("invalid hash encoding")
    memory_cost, time_cost, parallelism = (int(v) for v in params_match.groups())
    return int(version_match.group(1)), HashParameters(
        memory_cost=memory_cost,
        time_cost=time_cost,
        parallelism=parallelism,
        salt_len=len(salt),
        hash_len=len(digest),
    )


class PasswordHasher:
    """Argon2id credential hasher.

    ``hash`` salts with fresh random bytes on every call, so the same password
    never encodes to the same string twice. ``verify`` recomputes with the
    parameters stored in the encoded string, which keeps hashes produced under
    older parameters verifiable after a cost change.
    """

    def __init__(self, params: HashParameters | None = None) -> None:
        self.params = params or HashParameters()
        self._hasher = Argon2Hasher(
            time_cost=self.params.time_cost,
            memory_cost=self.params.memory_cost,
            parallelism=self.params.parallelism,
            hash_len=self.params.hash_len,
            salt_len=self.params.salt_len,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise KDFError("failed to hash password") from exc

    def verify(self, password: str, encoded: str) -> bool:
        version, _ = parse_encoded_hash(encoded)
        if version != ARGON2_VERSION:
            raise HashFormatError("incompatible argon2 version")
        try:
            return self._hasher.verify(encoded, password)
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            raise HashFormatError("invalid hash format") from exc
        except VerificationError:
            return False

    def needs_rehash(self, encoded: str) -> bool:
        _, stored = parse_encoded_hash(encoded)
        return stored != self.params
