"""
Deterministic canonicalization, hashing and HMAC signing of deliverable manifests.

The canonical form is compact JSON with every object's keys sorted by code
point, so it does not depend on the process locale. Numbers are written the
way the market's other clients write them: integral floats lose their ``.0``
and non-finite floats become ``null``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import math
from typing import Any

from market_autopilot.models import (
    DeliverableManifest,
    ManifestSignature,
    SignedDeliverableManifest,
)

DEFAULT_SIGNER_ID = "autopilot"


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _normalize(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, float) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def canonical_json(value: Any) -> str:
    """Encode any JSON-compatible value in canonical form."""
    return json.dumps(_normalize(value), separators=(",", ":"), ensure_ascii=False)


def canonicalize_manifest(manifest: DeliverableManifest) -> str:
    """Return the canonical string of a manifest, using its camelCase field names.

    Metadata values go through pydantic's JSON mode first, so datetimes and
    similar values are hashed as their JSON strings.
    """
    return canonical_json(manifest.model_dump(mode="json", by_alias=True))


def manifest_hash(manifest: DeliverableManifest) -> str:
    """SHA-256 hex digest of the manifest's canonical form."""
    return hashlib.sha256(canonicalize_manifest(manifest).encode("utf-8")).hexdigest()


def _hmac_hex(signing_key: str, message: str) -> str:
    return hmac.new(signing_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_deliverable_manifest(
    manifest: DeliverableManifest,
    signing_key: str,
    signer_id: str | None = None,
) -> SignedDeliverableManifest:
    """Sign a manifest with HMAC-SHA256 over its hash.

    Args:
        manifest: The manifest to sign.
        signing_key: Shared secret. Must be non-empty.
        signer_id: Identifier recorded in the signature, ``autopilot`` by default.

    Returns:
        The manifest together with its hash and signature.

    Raises:
        ValueError: If the signing key is empty.
    """
    if not signing_key:
        msg = "signing_key must be a non-empty string"
        raise ValueError(msg)

    digest = manifest_hash(manifest)
    return SignedDeliverableManifest(
        manifest=manifest,
        manifest_hash=digest,
        signature=ManifestSignature(
            signer_id=signer_id or DEFAULT_SIGNER_ID,
            signature_hex=_hmac_hex(signing_key, digest),
        ),
    )


def verify_deliverable_manifest_signature(
    signed: SignedDeliverableManifest,
    signing_key: str,
) -> bool:
    """Check a signed manifest against a key. Mismatches return False."""
    digest = manifest_hash(signed.manifest)
    if digest != signed.manifest_hash:
        return False
    if not signing_key:
        return False
    expected = _hmac_hex(signing_key, digest)
    return hmac.compare_digest(expected, signed.signature.signature_hex)


def deterministic_deliverable_hash(
    manifest: DeliverableManifest,
    signing_key: str,
    signer_id: str | None = None,
) -> str:
    """Commitment hash binding a manifest to its signature and signer.

    ``sha256("<manifest_hash>:<signature_hex>:<signer_id>")``, hex encoded.
    The signer defaults to ``autopilot``, as in the signature itself.
    """
    signed = sign_deliverable_manifest(manifest, signing_key, signer_id)
    signature = signed.signature
    commitment = f"{signed.manifest_hash}:{signature.signature_hex}:{signature.signer_id}"
    return hashlib.sha256(commitment.encode("utf-8")).hexdigest()
