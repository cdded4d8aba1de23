"""Sidetree operation requests for file index documents.

Supports the two operations the file commands need:

- ``create``: an opaque document plus recovery/update commitments
- ``update``: an IETF JSON patch signed (compact JWS) with the current update key

Commitments and hashes are base64url (unpadded) multihashes of sha2-256 over
the canonical JSON (sorted keys, no whitespace) of the value.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

SHA2_256 = 0x12
UPDATE_KEY_ID = "updateKey"

_CURVES: dict[str, tuple[str, str, Any]] = {
    # curve name -> (JWK crv, JWS alg, hash)
    "secp256r1": ("P-256", "ES256", hashes.SHA256),
    "secp384r1": ("P-384", "ES384", hashes.SHA384),
    "secp521r1": ("P-521", "ES512", hashes.SHA512),
    "secp256k1": ("secp256k1", "ES256K", hashes.SHA256),
}


class KeyFormatError(ValueError):
    pass


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def canonicalize(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def multihash_sha256(data: bytes) -> bytes:
    digest = hashlib.sha256(data).digest()
    return bytes([SHA2_256, len(digest)]) + digest


def encoded_multihash(data: bytes) -> str:
    return b64url_encode(multihash_sha256(data))


def public_key_from_pem(data: bytes | str) -> Any:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    try:
        return serialization.load_pem_public_key(raw)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyFormatError(f"public key not found in PEM: {e}") from e


def private_key_from_pem(data: bytes | str) -> ec.EllipticCurvePrivateKey:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    try:
        key = serialization.load_pem_private_key(raw, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyFormatError(f"private key not found in PEM: {e}") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise KeyFormatError("signing key must be an EC private key")
    return key


def public_key_jwk(key: Any) -> dict[str, str]:
    """Public JWK for an EC or Ed25519 public key."""
    if isinstance(key, ed25519.Ed25519PublicKey):
        raw = key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        return {"kty": "OKP", "crv": "Ed25519", "x": b64url_encode(raw)}
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise KeyFormatError(f"unsupported public key type: {type(key).__name__}")
    params = _CURVES.get(key.curve.name)
    if params is None:
        raise KeyFormatError(f"unsupported curve: {key.curve.name}")
    size = (key.curve.key_size + 7) // 8
    nums = key.public_numbers()
    return {
        "kty": "EC",
        "crv": params[0],
        "x": b64url_encode(nums.x.to_bytes(size, "big")),
        "y": b64url_encode(nums.y.to_bytes(size, "big")),
    }


def commitment(jwk: dict[str, Any]) -> str:
    return encoded_multihash(canonicalize(jwk))


class ECSigner:
    """Produces compact JWS signatures (raw r||s) with an EC private key."""

    def __init__(self, key: ec.EllipticCurvePrivateKey, *, kid: str = UPDATE_KEY_ID) -> None:
        params = _CURVES.get(key.curve.name)
        if params is None:
            raise KeyFormatError(f"unsupported curve: {key.curve.name}")
        self._key = key
        self._alg = params[1]
        self._hash = params[2]
        self._size = (key.curve.key_size + 7) // 8
        self.kid = kid

    def public_jwk(self) -> dict[str, str]:
        return public_key_jwk(self._key.public_key())

    def compact_jws(self, payload: bytes) -> str:
        header = b64url_encode(canonicalize({"alg": self._alg, "kid": self.kid}))
        signing_input = f"{header}.{b64url_encode(payload)}"
        der = self._key.sign(signing_input.encode("ascii"), ec.ECDSA(self._hash()))
        r, s = decode_dss_signature(der)
        sig = r.to_bytes(self._size, "big") + s.to_bytes(self._size, "big")
        return f"{signing_input}.{b64url_encode(sig)}"


def new_create_request(*, opaque_document: dict[str, Any], recovery_commitment: str, update_commitment: str) -> bytes:
    delta = canonicalize(
        {
            "patches": [{"action": "replace", "document": opaque_document}],
            "update_commitment": update_commitment,
        }
    )
    suffix_data = canonicalize({"delta_hash": encoded_multihash(delta), "recovery_commitment": recovery_commitment})
    return canonicalize(
        {
            "type": "create",
            "suffix_data": b64url_encode(suffix_data),
            "delta": b64url_encode(delta),
        }
    )


def new_update_request(
    *,
    did_suffix: str,
    update_commitment: str,
    patches: list[dict[str, Any]],
    signer: ECSigner,
) -> bytes:
    if not did_suffix:
        raise ValueError("missing did unique suffix")
    if not patches:
        raise ValueError("missing update information")
    delta = canonicalize(
        {
            "patches": [{"action": "ietf-json-patch", "patches": patches}],
            "update_commitment": update_commitment,
        }
    )
    signed = signer.compact_jws(canonicalize({"delta_hash": encoded_multihash(delta), "update_key": signer.public_jwk()}))
    return canonicalize(
        {
            "type": "update",
            "did_suffix": did_suffix,
            "signed_data": signed,
            "delta": b64url_encode(delta),
        }
    )
