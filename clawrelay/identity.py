"""
Device identity for authenticating this relay to gateways.

Each relay process owns one long-lived Ed25519 keypair, generated on first
boot and persisted as JSON next to the config. The device id is the SHA-256
hex digest of the raw 32-byte public key, so it survives restarts as long as
the file does. During the gateway handshake the relay signs a pipe-delimited
assertion with the private key; the gateway verifies it against the public
key sent alongside.

File format:

  {"version": 1, "deviceId": "<hex>", "publicKeyPem": "...",
   "privateKeyPem": "...", "createdAtMs": 1700000000000}
"""
import base64
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

log = logging.getLogger("clawrelay.identity")

IDENTITY_VERSION = 1

CLIENT_ID   = "gateway-client"
CLIENT_MODE = "backend"
ROLE        = "operator"
SCOPES      = ("operator.admin",)


class IdentityError(RuntimeError):
    """The device identity could not be loaded or persisted."""


def base64url(data: bytes) -> str:
    """Unpadded URL-safe base64, as the gateway expects."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def public_key_raw(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def fingerprint_public_key(public_key: ed25519.Ed25519PublicKey) -> str:
    """Return the SHA-256 hex fingerprint of the raw public key bytes."""
    return hashlib.sha256(public_key_raw(public_key)).hexdigest()


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key: ed25519.Ed25519PublicKey
    private_key: ed25519.Ed25519PrivateKey

    @property
    def public_key_b64(self) -> str:
        return base64url(public_key_raw(self.public_key))

    def to_dict(self) -> dict:
        public_pem = self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        private_pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {
            "version": IDENTITY_VERSION,
            "deviceId": self.device_id,
            "publicKeyPem": public_pem.decode(),
            "privateKeyPem": private_pem.decode(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DeviceIdentity":
        """
        Rebuild an identity from its persisted form.

        Raises ValueError if a field is missing or a key does not parse as
        Ed25519. The device id is recomputed from the public key rather than
        trusted from the file.
        """
        if d.get("version") != IDENTITY_VERSION:
            raise ValueError(f"unsupported identity version: {d.get('version')!r}")
        public_pem = d.get("publicKeyPem")
        private_pem = d.get("privateKeyPem")
        if not public_pem or not private_pem:
            raise ValueError("identity is missing key material")
        public_key = serialization.load_pem_public_key(public_pem.encode())
        private_key = serialization.load_pem_private_key(private_pem.encode(), password=None)
        if not isinstance(public_key, ed25519.Ed25519PublicKey) or \
                not isinstance(private_key, ed25519.Ed25519PrivateKey):
            raise ValueError("identity keys are not Ed25519")
        device_id = fingerprint_public_key(public_key)
        stored_id = d.get("deviceId")
        if stored_id and stored_id != device_id:
            log.warning("Stored device id %s does not match public key, using %s",
                        stored_id[:12], device_id[:12])
        return cls(device_id=device_id, public_key=public_key, private_key=private_key)


def generate_identity() -> DeviceIdentity:
    private_key = ed25519.Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return DeviceIdentity(
        device_id=fingerprint_public_key(public_key),
        public_key=public_key,
        private_key=private_key,
    )


def _write_identity(path: str, identity: DeviceIdentity) -> None:
    stored = identity.to_dict()
    stored["createdAtMs"] = int(time.time() * 1000)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(stored, f, indent=2)
        f.write("\n")
    # O_CREAT's mode does not apply when overwriting an existing file
    os.chmod(path, 0o600)


def load_or_create(path: str) -> DeviceIdentity:
    """
    Load the identity stored at `path`, or generate and persist a new one.

    A file that is unreadable, malformed or incomplete is treated as absent
    and overwritten. Failing to write the new identity raises IdentityError:
    without it no gateway handshake is possible.
    """
    if os.path.exists(path):
        try:
            with open(path, encoding="utf-8") as f:
                identity = DeviceIdentity.from_dict(json.load(f))
            log.info("Loaded device identity %s", identity.device_id)
            return identity
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            log.warning("Ignoring unusable device identity at %s: %s", path, exc)

    identity = generate_identity()
    try:
        _write_identity(path, identity)
    except OSError as exc:
        raise IdentityError(f"could not persist device identity to {path}: {exc}") from exc
    log.info("Generated new device identity %s", identity.device_id)
    return identity


def build_assertion_payload(identity: DeviceIdentity, token: str,
                            signed_at_ms: int, nonce: str | None = None) -> str:
    version = "v2" if nonce else "v1"
    parts = [
        version,
        identity.device_id,
        CLIENT_ID,
        CLIENT_MODE,
        ROLE,
        ",".join(SCOPES),
        str(signed_at_ms),
        token or "",
    ]
    if nonce:
        parts.append(nonce)
    return "|".join(parts)


def sign_assertion(identity: DeviceIdentity, token: str, nonce: str | None = None) -> dict:
    """
    Build the `device` field of a connect request.

    Uses the v2 payload when the gateway supplied a challenge nonce and the
    legacy v1 payload otherwise. signedAt is taken at call time, so every
    handshake attempt needs a fresh assertion.
    """
    signed_at_ms = int(time.time() * 1000)
    payload = build_assertion_payload(identity, token, signed_at_ms, nonce)
    signature = identity.private_key.sign(payload.encode("utf-8"))
    field = {
        "id": identity.device_id,
        "publicKey": identity.public_key_b64,
        "signature": base64url(signature),
        "signedAt": signed_at_ms,
    }
    if nonce:
        field["nonce"] = nonce
    return field
