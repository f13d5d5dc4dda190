"""Deterministic hashes: consumer change tokens and the audit hash chain."""

import hashlib
import hmac
import json

from consumerauth.config import settings


def compute_change_token(fields: dict, secret: str | None = None) -> str:
    """HMAC-SHA1 over the serialized mutable fields of a record (40 hex chars)."""
    key = (secret if secret is not None else settings.change_token_secret).encode("utf-8")
    payload = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key, payload.encode("utf-8"), hashlib.sha1).hexdigest()


def tokens_match(expected: str, presented: str | None) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def compute_audit_hash(
    prev_hash: str | None,
    action: str,
    consumer_key: str,
    performer_id: int,
    comment: str,
    timestamp_iso: str,
) -> str:
    payload = "|".join([
        prev_hash or "GENESIS",
        action,
        consumer_key,
        str(performer_id),
        comment,
        timestamp_iso,
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
