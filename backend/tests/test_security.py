import time

from pydantic import SecretStr

from opinion_map.core.config import Settings
from opinion_map.core.security import verify_qstash_signature, verify_worker_request

URL = "https://example.test/webhooks/opinion-map-worker"
BODY = b'{"session_id": "zone_1"}'


def test_valid_signature_is_accepted_with_either_key(qstash_signer):
    assert verify_qstash_signature(qstash_signer(BODY, "current"), BODY, ["current", "next"], URL)
    assert verify_qstash_signature(qstash_signer(BODY, "next"), BODY, ["current", "next"], URL)
    assert verify_qstash_signature(qstash_signer(BODY, "next"), BODY, [None, "next"])


def test_tampered_or_stale_signatures_are_rejected(qstash_signer):
    keys = ["current", "next"]

    assert not verify_qstash_signature(qstash_signer(BODY, "other"), BODY, keys)
    assert not verify_qstash_signature(qstash_signer(BODY, "current"), b'{"session_id": "zone_2"}', keys)
    assert not verify_qstash_signature(qstash_signer(BODY, "current", exp=int(time.time()) - 3600), BODY, keys)
    assert not verify_qstash_signature(qstash_signer(BODY, "current", iss="Someone"), BODY, keys)
    assert not verify_qstash_signature(qstash_signer(BODY, "current"), BODY, keys, "https://elsewhere.test/hook")
    assert not verify_qstash_signature("not.a-token", BODY, keys)


def test_worker_request_accepts_bearer_key():
    settings = Settings(worker_api_key=SecretStr("worker-secret"))

    assert verify_worker_request(signature=None, authorization="Bearer worker-secret", body=b"{}", settings=settings)
    assert not verify_worker_request(signature=None, authorization="Bearer wrong", body=b"{}", settings=settings)
    assert not verify_worker_request(signature=None, authorization="Basic worker-secret", body=b"{}", settings=settings)
    assert not verify_worker_request(signature=None, authorization=None, body=b"{}", settings=settings)


def test_worker_request_accepts_qstash_signature(qstash_signer):
    settings = Settings(
        qstash_current_signing_key=SecretStr("current"),
        qstash_next_signing_key=SecretStr("next"),
    )

    assert verify_worker_request(signature=qstash_signer(BODY, "next"), authorization=None, body=BODY, settings=settings)
    assert not verify_worker_request(
        signature=qstash_signer(BODY, "stale"), authorization=None, body=BODY, settings=settings
    )
