"""Authentication of worker callbacks.

QStash signs each delivery with an HS256 JWT in the ``Upstash-Signature`` header;
the token's ``body`` claim is the base64url SHA-256 of the request body. Either
the current or the next signing key may have produced it during key rotation.
Direct calls can instead present ``Authorization: Bearer <worker_api_key>``.

Functions:
    verify_qstash_signature(token, body, signing_keys, url): Validate a QStash JWT.
    verify_worker_request(signature, authorization, body, url, settings): Accept either credential.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Iterable, Optional

from opinion_map.core.config import Settings

_LOGGER = logging.getLogger(__name__)

QSTASH_ISSUER = "Upstash"
_CLOCK_SKEW_SECONDS = 60


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _valid_for_key(token: str, key: str, body: bytes, url: Optional[str], now: float) -> bool:
    try:
        header_segment, payload_segment, signature_segment = token.split(".")
        header = json.loads(_b64url_decode(header_segment))
        claims = json.loads(_b64url_decode(payload_segment))
        signature = _b64url_decode(signature_segment)
    except (ValueError, json.JSONDecodeError):
        return False

    if not isinstance(header, dict) or header.get("alg") != "HS256" or not isinstance(claims, dict):
        return False

    expected = hmac.new(
        key.encode("utf-8"),
        f"{header_segment}.{payload_segment}".encode("ascii"),
        hashlib.sha256,
    ).digest()
    if not hmac.compare_digest(expected, signature):
        return False

    if claims.get("iss") != QSTASH_ISSUER:
        return False
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and now > exp + _CLOCK_SKEW_SECONDS:
        return False
    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and now + _CLOCK_SKEW_SECONDS < nbf:
        return False
    if url is not None and claims.get("sub") not in (None, url):
        return False

    body_hash = _b64url_encode(hashlib.sha256(body).digest())
    claimed = str(claims.get("body", "")).rstrip("=")
    return hmac.compare_digest(body_hash, claimed)


def verify_qstash_signature(
    token: str,
    body: bytes,
    signing_keys: Iterable[Optional[str]],
    url: Optional[str] = None,
) -> bool:
    now = time.time()
    for key in signing_keys:
        if key and _valid_for_key(token, key, body, url, now):
            return True
    return False


def verify_worker_request(
    *,
    signature: Optional[str],
    authorization: Optional[str],
    body: bytes,
    settings: Settings,
    url: Optional[str] = None,
) -> bool:
    if signature:
        keys = [
            secret.get_secret_value()
            for secret in (settings.qstash_current_signing_key, settings.qstash_next_signing_key)
            if secret is not None
        ]
        if keys and verify_qstash_signature(signature, body, keys, url):
            return True
        _LOGGER.warning("Rejected worker request with an invalid QStash signature")

    if authorization and settings.worker_api_key is not None:
        scheme, _, credential = authorization.partition(" ")
        expected = settings.worker_api_key.get_secret_value()
        if scheme.lower() == "bearer" and expected and hmac.compare_digest(credential.strip(), expected):
            return True

    return False
