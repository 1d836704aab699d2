"""
Cryptographic proof verification for multi-sig signers.

Every verification is bound to a single-use challenge minted for the
(operation, signer) pair. Supported proof types:
- PASSWORD: salted hash computed over the challenge
- TOTP: RFC 6238 token, +/- one 30s step
- HARDWARE_KEY: WebAuthn/FIDO2 assertion (ECDSA P-256 / SHA-256)
- BIOMETRIC: on-device match with attestation and confidence threshold
- PKI: X.509 certificate signature over {challenge, payload, timestamp}

Expected validation failures come back as ``VerificationResult(valid=False)``;
they never raise. Chain/revocation checks are delegated to an injected
CertificateValidator and bounded by a timeout (timeout = invalid proof).
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import struct
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from .challenges import Challenge, ChallengeStore
from .config import ProofSettings
from .logging import mask_sensitive_data
from .merkle import MerkleTree, ProofStep, hash_leaf
from .models import ProofType

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"[0-9a-f]{64}")


@dataclass
class VerificationRequest:
    """Input to ProofVerifier.verify()."""
    user_id: str
    proof_type: ProofType | str
    proof_data: Mapping[str, Any]
    operation_id: str
    payload: Any = None


@dataclass
class VerificationResult:
    """Outcome of a proof verification."""
    valid: bool
    reason: Optional[str] = None
    proof_hash: Optional[str] = None
    method: Optional[str] = None
    verified_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fail(cls, reason: str) -> "VerificationResult":
        return cls(valid=False, reason=reason)


@dataclass
class CertificateCheck:
    valid: bool
    reason: Optional[str] = None


class CredentialStore(Protocol):
    """Registered signer credentials (external key storage)."""

    def get_password_digest(self, user_id: str) -> Optional[str]:
        ...

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        """Base32-encoded shared secret."""
        ...

    def get_hardware_key(self, user_id: str, credential_id: str) -> Optional[bytes]:
        """PEM-encoded public key registered for a FIDO2 credential."""
        ...


class CertificateValidator(Protocol):
    """External certificate chain and revocation validation."""

    async def validate(self, certificate_pem: str, user_id: str) -> CertificateCheck:
        ...


class InMemoryCredentialStore:
    """Credential store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._passwords: dict[str, str] = {}
        self._totp_secrets: dict[str, str] = {}
        self._hardware_keys: dict[tuple[str, str], bytes] = {}

    def register_password(self, user_id: str, digest: str) -> None:
        self._passwords[user_id] = digest

    def register_totp(self, user_id: str, secret_b32: str) -> None:
        self._totp_secrets[user_id] = secret_b32

    def register_hardware_key(self, user_id: str, credential_id: str, public_key_pem: bytes) -> None:
        self._hardware_keys[(user_id, credential_id)] = public_key_pem

    def get_password_digest(self, user_id: str) -> Optional[str]:
        return self._passwords.get(user_id)

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        return self._totp_secrets.get(user_id)

    def get_hardware_key(self, user_id: str, credential_id: str) -> Optional[bytes]:
        return self._hardware_keys.get((user_id, credential_id))


# =============================================================================
# Client-side helpers (shared with tests and SDKs)
# =============================================================================

def compute_password_proof(challenge_hash: str, salt: str, password_digest: str) -> str:
    """Password proof a client submits for a given challenge."""
    return hashlib.sha256(f"{challenge_hash}:{salt}:{password_digest}".encode()).hexdigest()


def totp_code(secret_b32: str, counter: int, digits: int = 6) -> str:
    """RFC 4226 HOTP value for ``counter`` (TOTP uses counter = unix // period)."""
    secret = secret_b32.upper()
    key = base64.b32decode(secret + "=" * ((8 - len(secret) % 8) % 8))
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(code % (10 ** digits)).zfill(digits)


def canonical_pki_message(challenge_hash: str, payload: Any, timestamp: Any) -> bytes:
    """Bytes a PKI signer signs: canonical JSON of challenge, payload and timestamp."""
    message = {"challenge": challenge_hash, "payload": payload, "timestamp": timestamp}
    return json.dumps(message, sort_keys=True, separators=(",", ":"), default=str).encode()


# =============================================================================
# Signature aggregation
# =============================================================================

@dataclass
class SignatureAggregate:
    """Fixed-size commitment to the signature set of an operation."""
    aggregated_hash: str
    signature_count: int
    signer_ids: List[str]
    timestamp: datetime
    _tree: Optional[MerkleTree] = field(default=None, repr=False, compare=False)

    def inclusion_proof(self, signer_id: str) -> List[ProofStep]:
        """Merkle path proving ``signer_id``'s signature is in the aggregate."""
        if self._tree is None or signer_id not in self.signer_ids:
            raise KeyError(f"Signer {signer_id} not in aggregate")
        return self._tree.get_proof(self.signer_ids.index(signer_id))

    def verify_inclusion(self, signature_hash: str, proof: List[ProofStep]) -> bool:
        return MerkleTree.verify_proof(hash_leaf(signature_hash.encode()), proof, self.aggregated_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggregated_hash": self.aggregated_hash,
            "signature_count": self.signature_count,
            "signer_ids": self.signer_ids,
            "timestamp": self.timestamp.isoformat(),
        }


def aggregate_signatures(signatures: Iterable[Any]) -> Optional[SignatureAggregate]:
    """Merkle root over signatures sorted by signer id.

    Accepts Signature objects or mappings with ``signer_id`` and
    ``signature_hash``. Returns None for an empty input.
    """
    items = []
    for sig in signatures:
        if isinstance(sig, Mapping):
            items.append((str(sig["signer_id"]), str(sig["signature_hash"])))
        else:
            items.append((str(sig.signer_id), str(sig.signature_hash)))
    if not items:
        return None

    items.sort()
    tree = MerkleTree([signature_hash.encode() for _, signature_hash in items])
    return SignatureAggregate(
        aggregated_hash=tree.root,
        signature_count=len(items),
        signer_ids=[signer_id for signer_id, _ in items],
        timestamp=datetime.now(timezone.utc),
        _tree=tree,
    )


# =============================================================================
# Verifier
# =============================================================================

ProofHandler = Callable[[VerificationRequest, Challenge], Awaitable[VerificationResult]]


class ProofVerifier:
    """
    Verifies signer proofs against operation-bound challenges.

    Handlers are pluggable per proof type via register().
    """

    def __init__(
        self,
        challenge_store: Optional[ChallengeStore] = None,
        credentials: Optional[CredentialStore] = None,
        certificate_validator: Optional[CertificateValidator] = None,
        settings: Optional[ProofSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._clock = clock or time.time
        self._challenges = challenge_store or ChallengeStore(clock=self._clock)
        self._credentials = credentials or InMemoryCredentialStore()
        self._certificate_validator = certificate_validator
        self.settings = settings or ProofSettings()

        self._handlers: Dict[ProofType, ProofHandler] = {
            ProofType.PASSWORD: self._verify_password,
            ProofType.TOTP: self._verify_totp,
            ProofType.HARDWARE_KEY: self._verify_hardware_key,
            ProofType.BIOMETRIC: self._verify_biometric,
            ProofType.PKI: self._verify_pki,
        }

    @property
    def challenges(self) -> ChallengeStore:
        return self._challenges

    def register(self, proof_type: ProofType, handler: ProofHandler) -> None:
        """Install or replace the handler for a proof type."""
        self._handlers[proof_type] = handler

    def supported_proof_types(self) -> List[ProofType]:
        return list(self._handlers)

    def issue_challenge(self, operation_id: str, user_id: str) -> Challenge:
        """Mint and store a challenge; expired entries are collected on every call."""
        now = int(self._clock())
        challenge = Challenge.mint(
            operation_id,
            user_id,
            now=now,
            ttl_seconds=self.settings.challenge_ttl_seconds,
        )
        self._challenges.cleanup(now)
        self._challenges.put(challenge)
        return challenge

    async def verify(self, request: VerificationRequest | Mapping[str, Any]) -> VerificationResult:
        """
        Verify a signer's proof.

        Args:
            request: VerificationRequest (or mapping with the same keys)

        Returns:
            VerificationResult; ``valid=False`` carries the reason

        Raises:
            ValueError: If the request itself is malformed
        """
        if isinstance(request, Mapping):
            request = VerificationRequest(**request)
        if not isinstance(request, VerificationRequest):
            raise ValueError(f"Unsupported verification request: {type(request).__name__}")
        if not request.user_id or not request.operation_id:
            raise ValueError("Verification request requires user_id and operation_id")

        fresh = self.issue_challenge(request.operation_id, request.user_id)

        try:
            proof_type = ProofType(str(getattr(request.proof_type, "value", request.proof_type)).lower())
        except ValueError:
            return VerificationResult.fail(f"Unsupported proof type: {request.proof_type}")
        handler = self._handlers.get(proof_type)
        if handler is None:
            return VerificationResult.fail(f"Unsupported proof type: {proof_type.value}")

        if not isinstance(request.proof_data, Mapping):
            return VerificationResult.fail("Malformed proof data")

        challenge_hash = request.proof_data.get("challenge") or fresh.hash
        consumed, reason = self._challenges.consume(
            str(challenge_hash), request.operation_id, request.user_id
        )
        if not consumed:
            logger.info(
                "Challenge refused for %s on %s: %s",
                request.user_id, request.operation_id, reason,
            )
            return VerificationResult.fail(reason)
        challenge = self._challenges.get(str(challenge_hash))

        result = await handler(request, challenge)
        if result.valid:
            result.verified_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        else:
            logger.debug(
                "Proof %s rejected for %s: %s (data=%s)",
                proof_type.value,
                request.user_id,
                result.reason,
                mask_sensitive_data(dict(request.proof_data)),
            )
        return result

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _verify_password(self, request: VerificationRequest, challenge: Challenge) -> VerificationResult:
        data = request.proof_data
        password_hash = data.get("password_hash")
        salt = data.get("salt")
        timestamp = data.get("timestamp")

        if not password_hash or not salt:
            return VerificationResult.fail("Missing password hash or salt")
        if not isinstance(password_hash, str) or not _HEX64.fullmatch(password_hash):
            return VerificationResult.fail("Malformed password hash")
        if not isinstance(timestamp, (int, float)):
            return VerificationResult.fail("Missing proof timestamp")
        if abs(self._clock() - timestamp) > self.settings.password_freshness_seconds:
            return VerificationResult.fail("Password proof expired")

        digest = self._credentials.get_password_digest(request.user_id)
        if digest is None:
            return VerificationResult.fail("No password credential registered")

        expected = compute_password_proof(challenge.hash, str(salt), digest)
        if not hmac.compare_digest(expected, password_hash):
            return VerificationResult.fail("Invalid password proof")

        return VerificationResult(
            valid=True,
            proof_hash=hashlib.sha256(password_hash.encode()).hexdigest(),
            method="PASSWORD_HASH",
        )

    async def _verify_totp(self, request: VerificationRequest, challenge: Challenge) -> VerificationResult:
        token = str(request.proof_data.get("token") or "")
        digits = self.settings.totp_digits

        if len(token) != digits or not token.isdigit():
            return VerificationResult.fail("Invalid TOTP token format")

        secret = self._credentials.get_totp_secret(request.user_id)
        if secret is None:
            return VerificationResult.fail("No TOTP secret registered")

        try:
            current_window = int(self._clock() // self.settings.totp_period_seconds)
            for offset in range(-self.settings.totp_window, self.settings.totp_window + 1):
                window = current_window + offset
                if hmac.compare_digest(totp_code(secret, window, digits), token):
                    return VerificationResult(
                        valid=True,
                        proof_hash=hashlib.sha256(
                            f"{request.user_id}:{token}:{window}".encode()
                        ).hexdigest(),
                        method="TOTP",
                        details={"window": window},
                    )
        except (binascii.Error, ValueError):
            return VerificationResult.fail("Malformed TOTP secret")

        return VerificationResult.fail("Invalid TOTP token")

    async def _verify_hardware_key(self, request: VerificationRequest, challenge: Challenge) -> VerificationResult:
        data = request.proof_data
        client_data_b64 = data.get("client_data_json")
        authenticator_b64 = data.get("authenticator_data")
        signature_b64 = data.get("signature")
        credential_id = data.get("credential_id")

        if not client_data_b64 or not authenticator_b64 or not signature_b64:
            return VerificationResult.fail("Missing hardware key proof components")

        try:
            client_data_raw = base64.b64decode(client_data_b64, validate=True)
            client_data = json.loads(client_data_raw)
            auth_data = base64.b64decode(authenticator_b64, validate=True)
            signature = base64.b64decode(signature_b64, validate=True)
        except (binascii.Error, ValueError):
            return VerificationResult.fail("Malformed hardware key proof")

        if not isinstance(client_data, dict):
            return VerificationResult.fail("Malformed hardware key proof")
        if client_data.get("challenge") != challenge.hash:
            return VerificationResult.fail("Challenge mismatch")
        if client_data.get("origin") not in self.settings.allowed_origins:
            return VerificationResult.fail("Invalid origin")

        # rpIdHash (32 bytes) | flags (1) | signCount (4)
        if len(auth_data) < 37:
            return VerificationResult.fail("Malformed authenticator data")
        flags = auth_data[32]
        user_present = (flags & 0x01) != 0
        user_verified = (flags & 0x04) != 0
        if not user_present:
            return VerificationResult.fail("User presence not verified")

        public_key_pem = self._credentials.get_hardware_key(request.user_id, str(credential_id))
        if public_key_pem is None:
            return VerificationResult.fail("Unknown hardware credential")

        signed_data = auth_data + hashlib.sha256(client_data_raw).digest()
        try:
            public_key = load_pem_public_key(public_key_pem)
            if not isinstance(public_key, ec.EllipticCurvePublicKey):
                return VerificationResult.fail("Unsupported hardware key type")
            public_key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return VerificationResult.fail("Invalid hardware key signature")
        except (ValueError, UnsupportedAlgorithm):
            return VerificationResult.fail("Malformed registered hardware key")

        return VerificationResult(
            valid=True,
            proof_hash=hashlib.sha256(signature).hexdigest(),
            method="HARDWARE_KEY_FIDO2",
            details={"credential_id": credential_id, "user_verified": user_verified},
        )

    async def _verify_biometric(self, request: VerificationRequest, challenge: Challenge) -> VerificationResult:
        data = request.proof_data
        biometric_type = str(data.get("biometric_type") or "").upper()
        template_hash = data.get("template_hash")
        device_attestation = data.get("device_attestation")
        threshold = self.settings.biometric_confidence_threshold

        if biometric_type not in self.settings.biometric_types:
            return VerificationResult.fail(f"Unsupported biometric type: {biometric_type or None}")

        try:
            confidence = float(data.get("confidence"))
        except (TypeError, ValueError):
            return VerificationResult.fail("Missing biometric confidence")
        if confidence < threshold:
            return VerificationResult.fail(
                f"Biometric confidence {confidence} below threshold {threshold}"
            )

        if not template_hash or not device_attestation:
            return VerificationResult.fail("Missing biometric template or device attestation")

        return VerificationResult(
            valid=True,
            proof_hash=hashlib.sha256(f"{template_hash}:{challenge.hash}".encode()).hexdigest(),
            method=f"BIOMETRIC_{biometric_type}",
            details={"confidence": confidence},
        )

    async def _verify_pki(self, request: VerificationRequest, challenge: Challenge) -> VerificationResult:
        data = request.proof_data
        certificate_pem = data.get("certificate")
        signature_b64 = data.get("signature")
        algorithm = data.get("algorithm")
        timestamp = data.get("timestamp")

        if algorithm not in self.settings.pki_algorithms:
            return VerificationResult.fail(f"Unsupported signing algorithm: {algorithm}")
        if not certificate_pem or not signature_b64:
            return VerificationResult.fail("Missing certificate or signature")
        if self._certificate_validator is None:
            return VerificationResult.fail("Certificate validation unavailable")

        try:
            check = await asyncio.wait_for(
                self._certificate_validator.validate(certificate_pem, request.user_id),
                timeout=self.settings.external_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Certificate validation timed out for %s", request.user_id)
            return VerificationResult.fail("Certificate validation timed out")
        except Exception as e:
            logger.warning("Certificate validation error for %s: %s", request.user_id, e)
            return VerificationResult.fail(f"Certificate validation error: {type(e).__name__}")

        if not check.valid:
            return VerificationResult.fail(check.reason or "Certificate chain validation failed")

        try:
            certificate = x509.load_pem_x509_certificate(str(certificate_pem).encode())
            signature = base64.b64decode(signature_b64, validate=True)
        except (binascii.Error, ValueError):
            return VerificationResult.fail("Malformed certificate or signature")

        message = canonical_pki_message(challenge.hash, request.payload, timestamp)
        public_key = certificate.public_key()
        try:
            if algorithm == "RSA-SHA256" and isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
            elif algorithm == "ECDSA-SHA256" and isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
            else:
                return VerificationResult.fail(f"Certificate key does not match {algorithm}")
        except InvalidSignature:
            return VerificationResult.fail("Invalid PKI signature")

        return VerificationResult(
            valid=True,
            proof_hash=hashlib.sha256(signature).hexdigest(),
            method=f"PKI_{algorithm}",
            details={
                "certificate_fingerprint": certificate.fingerprint(hashes.SHA256()).hex()[:16],
            },
        )


__all__ = [
    "VerificationRequest",
    "VerificationResult",
    "CertificateCheck",
    "CredentialStore",
    "CertificateValidator",
    "InMemoryCredentialStore",
    "SignatureAggregate",
    "ProofVerifier",
    "aggregate_signatures",
    "compute_password_proof",
    "totp_code",
    "canonical_pki_message",
]
