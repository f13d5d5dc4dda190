"""OAuth 1.0a signatures (RFC 5849 section 3.4): HMAC-SHA1 and RSA-SHA1."""

import base64
import hashlib
import hmac
import logging
from collections.abc import Mapping
from urllib.parse import quote, urlsplit

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from consumerauth.oauth1.request import HMAC_SHA1, RSA_SHA1

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def escape(value) -> str:
    return quote(str(value), safe="~")


def normalize_url(url: str) -> str:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if parts.port and parts.port != _DEFAULT_PORTS.get(scheme):
        host = f"{host}:{parts.port}"
    return f"{scheme}://{host}{parts.path or '/'}"


def normalize_parameters(params: Mapping[str, str]) -> str:
    pairs = sorted(
        (escape(k), escape(v)) for k, v in params.items() if k != "oauth_signature"
    )
    return "&".join(f"{k}={v}" for k, v in pairs)


def signature_base_string(method: str, url: str, params: Mapping[str, str]) -> str:
    return "&".join([
        escape(method.upper()),
        escape(normalize_url(url)),
        escape(normalize_parameters(params)),
    ])


def hmac_sha1_signature(base_string: str, consumer_secret: str, token_secret: str = "") -> str:
    key = f"{escape(consumer_secret)}&{escape(token_secret or '')}"
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def load_rsa_public_key(pem: str) -> rsa.RSAPublicKey | None:
    """Parse a PEM public key; returns None if it is not a usable RSA key."""
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm):
        return None
    return key if isinstance(key, rsa.RSAPublicKey) else None


def verify_hmac_sha1(base_string: str, signature: str, consumer_secret: str, token_secret: str = "") -> bool:
    expected = hmac_sha1_signature(base_string, consumer_secret, token_secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def verify_rsa_sha1(base_string: str, signature: str, public_key_pem: str) -> bool:
    key = load_rsa_public_key(public_key_pem)
    if key is None:
        logger.warning("Consumer RSA key could not be loaded")
        return False
    try:
        raw = base64.b64decode(signature, validate=True)
    except ValueError:
        return False
    try:
        key.verify(raw, base_string.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
    except InvalidSignature:
        return False
    return True


def verify_signature(
    method: str,
    url: str,
    params: Mapping[str, str],
    *,
    consumer_secret: str,
    token_secret: str = "",
    rsa_public_key: str = "",
) -> bool:
    base_string = signature_base_string(method, url, params)
    signature = params.get("oauth_signature", "")
    signature_method = params.get("oauth_signature_method")
    if signature_method == HMAC_SHA1:
        return verify_hmac_sha1(base_string, signature, consumer_secret, token_secret)
    if signature_method == RSA_SHA1:
        if not rsa_public_key:
            return False
        return verify_rsa_sha1(base_string, signature, rsa_public_key)
    return False


def sign_request(
    method: str,
    url: str,
    params: Mapping[str, str],
    *,
    consumer_secret: str = "",
    token_secret: str = "",
    private_key_pem: str | None = None,
) -> str:
    """Compute ``oauth_signature`` for ``params`` (client side).

    ``params["oauth_signature_method"]`` selects HMAC-SHA1 or RSA-SHA1; RSA
    signing needs ``private_key_pem``.
    """
    base_string = signature_base_string(method, url, params)
    if params.get("oauth_signature_method") == RSA_SHA1:
        if not private_key_pem:
            raise ValueError("RSA-SHA1 signing requires a private key")
        key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        raw = key.sign(base_string.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(raw).decode("ascii")
    return hmac_sha1_signature(base_string, consumer_secret, token_secret)
