"""Signed OAuth 1.0a requests: parameter collection and required-field checks."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import unquote

from consumerauth.core.exceptions import InvalidRequestError

HMAC_SHA1 = "HMAC-SHA1"
RSA_SHA1 = "RSA-SHA1"
SIGNATURE_METHODS = (HMAC_SHA1, RSA_SHA1)

REQUIRED_PARAMS = (
    "oauth_consumer_key",
    "oauth_signature_method",
    "oauth_signature",
    "oauth_timestamp",
    "oauth_nonce",
)

_AUTH_PARAM = re.compile(r'([A-Za-z0-9_\-]+)="([^"]*)"')


def parse_authorization_header(header: str | None) -> dict[str, str]:
    """Extract ``oauth_*`` parameters from an ``Authorization: OAuth ...`` header."""
    if not header:
        return {}
    scheme, _, rest = header.strip().partition(" ")
    if scheme.lower() != "oauth":
        return {}
    params = {}
    for key, value in _AUTH_PARAM.findall(rest):
        key = unquote(key)
        if key == "realm":
            continue
        params[key] = unquote(value)
    return params


@dataclass
class SignedRequest:
    method: str
    url: str  # scheme://host[:port]/path, no query string
    params: dict[str, str] = field(default_factory=dict)
    source_ip: str = ""

    @classmethod
    def from_parts(
        cls,
        method: str,
        url: str,
        *,
        authorization: str | None = None,
        query: Mapping[str, str] | None = None,
        form: Mapping[str, str] | None = None,
        source_ip: str = "",
    ) -> "SignedRequest":
        """Merge query, form and Authorization-header parameters.

        Header parameters win over body and query values of the same name.
        """
        params: dict[str, str] = {}
        params.update(query or {})
        params.update(form or {})
        params.update(parse_authorization_header(authorization))
        return cls(method=method.upper(), url=url.split("?", 1)[0], params=params, source_ip=source_ip)

    @property
    def consumer_key(self) -> str:
        return self.params.get("oauth_consumer_key", "")

    @property
    def token(self) -> str:
        return self.params.get("oauth_token", "")

    @property
    def signature_method(self) -> str:
        return self.params.get("oauth_signature_method", "")

    @property
    def signature(self) -> str:
        return self.params.get("oauth_signature", "")

    @property
    def nonce(self) -> str:
        return self.params.get("oauth_nonce", "")

    @property
    def callback(self) -> str | None:
        return self.params.get("oauth_callback")

    @property
    def verifier(self) -> str:
        return self.params.get("oauth_verifier", "")

    @property
    def timestamp(self) -> int:
        try:
            return int(self.params.get("oauth_timestamp", ""))
        except ValueError:
            raise InvalidRequestError("oauth_timestamp must be an integer")

    def validate(self) -> None:
        missing = [name for name in REQUIRED_PARAMS if not self.params.get(name)]
        if missing:
            raise InvalidRequestError(f"Missing OAuth parameters: {', '.join(missing)}")
        version = self.params.get("oauth_version")
        if version is not None and version != "1.0":
            raise InvalidRequestError(f"OAuth version {version} not supported")
        if self.signature_method not in SIGNATURE_METHODS:
            raise InvalidRequestError(f"Signature method {self.signature_method} not supported")
        # Parses the timestamp, raising for non-integers
        self.timestamp
