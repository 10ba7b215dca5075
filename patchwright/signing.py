"""
Bundle signing and verification.

Bundles are signed with RSA-SHA256 (RSASSA-PKCS1-v1_5) over the SHA-256
digest of their canonical JSON form, computed without the `signature`
field. The signature block is attached next to the payload it covers,
never inside it.

Verification reports a merely invalid signature as False; only malformed
input raises SignatureError. Signature age is a separate policy checked
by `check_freshness`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, utils

from .domain import Bundle
from .errors import KeyStoreError, SignatureError

LOG = logging.getLogger(__name__)

ALGORITHM = "RSA-SHA256"
KEY_SIZE = 2048
MAX_SIGNATURE_AGE = timedelta(days=7)

_REQUIRED_SIGNATURE_FIELDS = ("algorithm", "key_id", "signed_at", "value")

Record = Union[Bundle, Mapping[str, Any]]


def canonicalize(record: Mapping[str, Any]) -> bytes:
    """
    Serialize a record deterministically.

    Object keys are sorted at every depth, array order is preserved, and
    separators are compact, so semantically identical records always
    produce identical bytes.
    """

    try:
        text = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SignatureError(f"record cannot be canonicalized: {exc}") from exc
    return text.encode("utf-8")


def _as_record(record: Record) -> Dict[str, Any]:
    if isinstance(record, Bundle):
        return record.to_dict()
    if not isinstance(record, Mapping):
        raise SignatureError(f"expected a bundle record, got {type(record).__name__}")
    return dict(record)


def unsigned_payload(record: Record) -> Dict[str, Any]:
    payload = _as_record(record)
    payload.pop("signature", None)
    return payload


def bundle_digest(record: Record) -> bytes:
    """
    SHA-256 digest of the canonical record without its signature.
    """

    return hashlib.sha256(canonicalize(unsigned_payload(record))).digest()


def fingerprint(public_key: rsa.RSAPublicKey) -> str:
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return "SHA256:" + hashlib.sha256(der).hexdigest()


class KeyStore:
    """
    RSA key pair stored as ``private.pem`` and ``public.pem`` in a directory.

    The private key file is written with mode 0600.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)
        self.private_path = os.path.join(self.path, "private.pem")
        self.public_path = os.path.join(self.path, "public.pem")

    def exists(self) -> bool:
        return os.path.isfile(self.private_path) and os.path.isfile(self.public_path)

    def generate(self, overwrite: bool = False) -> rsa.RSAPrivateKey:
        if self.exists() and not overwrite:
            raise KeyStoreError(f"a key pair already exists in {self.path}")

        LOG.info("Generating RSA-%d key pair in %s", KEY_SIZE, self.path)
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

        try:
            os.makedirs(self.path, mode=0o700, exist_ok=True)
            if os.path.exists(self.private_path):
                os.remove(self.private_path)
            fd = os.open(self.private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(private_pem)
            with open(self.public_path, "wb") as handle:
                handle.write(public_pem)
            os.chmod(self.public_path, 0o644)
        except OSError as exc:
            raise KeyStoreError(f"cannot write keys to {self.path}: {exc}") from exc

        return private_key

    def load_private_key(self) -> rsa.RSAPrivateKey:
        data = self._read(self.private_path)
        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise KeyStoreError(f"invalid private key in {self.private_path}: {exc}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise KeyStoreError(f"{self.private_path} does not hold an RSA private key")
        return key

    def load_public_key(self) -> rsa.RSAPublicKey:
        return load_public_key(self.public_path)

    def load_or_generate(self) -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
        if self.exists():
            private_key = self.load_private_key()
            LOG.debug("Loaded existing key pair from %s", self.path)
        else:
            LOG.warning("No key pair found in %s; generating a new one", self.path)
            private_key = self.generate()
        return private_key, private_key.public_key()

    def fingerprint(self) -> str:
        return fingerprint(self.load_public_key())

    @staticmethod
    def _read(path: str) -> bytes:
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise KeyStoreError(f"cannot read key file {path}: {exc}") from exc


def load_public_key(path: str) -> rsa.RSAPublicKey:
    data = KeyStore._read(path)
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError) as exc:
        raise KeyStoreError(f"invalid public key in {path}: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyStoreError(f"{path} does not hold an RSA public key")
    return key


class BundleSigner:
    def __init__(self, private_key: rsa.RSAPrivateKey, key_id: str) -> None:
        self.private_key = private_key
        self.key_id = key_id

    def sign(self, record: Record, signed_at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Return a new record carrying a signature block.

        An existing signature is replaced; no other field changes.
        """

        payload = unsigned_payload(record)
        digest = hashlib.sha256(canonicalize(payload)).digest()
        value = self.private_key.sign(digest, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256()))

        when = signed_at or datetime.now(timezone.utc)
        signed = dict(payload)
        signed["signature"] = {
            "algorithm": ALGORITHM,
            "key_id": self.key_id,
            "signed_at": when.isoformat(),
            "value": base64.b64encode(value).decode("ascii"),
        }
        LOG.info("Signed bundle %s with key %s", payload.get("id"), self.key_id)
        return signed


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: str
    key_id: Optional[str] = None


class BundleVerifier:
    def __init__(self, public_key: rsa.RSAPublicKey) -> None:
        self.public_key = public_key

    def verify(self, record: Record) -> bool:
        return self.verify_detailed(record).valid

    def verify_detailed(self, record: Record) -> VerificationResult:
        """
        Verify a possibly-signed record and explain the outcome.

        Raises SignatureError only for malformed input: a record that is
        not a mapping, a signature block that is not a mapping or lacks a
        required field, or a value that is not base64.
        """

        data = _as_record(record)
        signature = data.get("signature")
        if signature is None:
            return VerificationResult(False, "bundle is not signed")
        if not isinstance(signature, Mapping):
            raise SignatureError("signature block must be an object")

        missing = [f for f in _REQUIRED_SIGNATURE_FIELDS if not signature.get(f)]
        if missing:
            raise SignatureError(f"signature block is missing {', '.join(missing)}")

        key_id = signature["key_id"]
        if signature["algorithm"] != ALGORITHM:
            return VerificationResult(False, f"unsupported signature algorithm {signature['algorithm']!r}", key_id)

        try:
            value = base64.b64decode(signature["value"], validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise SignatureError(f"signature value is not valid base64: {exc}") from exc

        digest = bundle_digest(data)
        try:
            self.public_key.verify(value, digest, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256()))
        except InvalidSignature:
            LOG.warning("Signature check failed for bundle %s", data.get("id"))
            return VerificationResult(False, "signature does not match bundle contents", key_id)

        return VerificationResult(True, "signature valid", key_id)

    def verify_or_reject(self, record: Record) -> None:
        """
        Raise SignatureError unless the record carries a valid signature.
        """

        result = self.verify_detailed(record)
        if not result.valid:
            raise SignatureError(f"bundle rejected: {result.reason}")


def check_freshness(
    record: Record,
    max_age: timedelta = MAX_SIGNATURE_AGE,
    now: Optional[datetime] = None,
) -> bool:
    """
    Return True if the record's signature is younger than `max_age`.

    This does not check the signature itself; call a verifier for that.
    """

    signature = _as_record(record).get("signature")
    if not isinstance(signature, Mapping) or not signature.get("signed_at"):
        raise SignatureError("bundle has no signature timestamp")

    try:
        signed_at = datetime.fromisoformat(str(signature["signed_at"]).replace("Z", "+00:00"))
    except ValueError as exc:
        raise SignatureError(f"invalid signature timestamp: {signature['signed_at']!r}") from exc
    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=timezone.utc)

    current = now or datetime.now(timezone.utc)
    return current - signed_at <= max_age
