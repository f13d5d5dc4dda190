"""Random credential minting for consumers, tokens and verifier codes."""

import secrets
from dataclasses import dataclass

from consumerauth.config import settings


@dataclass(frozen=True)
class TokenCredentials:
    key: str
    secret: str


def generate_hex(n_bytes: int) -> str:
    """Hex string with ``n_bytes`` of entropy from the OS CSPRNG."""
    return secrets.token_hex(n_bytes)


def new_consumer_key() -> str:
    return generate_hex(settings.consumer_key_bytes)


def new_consumer_secret() -> str:
    return generate_hex(settings.consumer_key_bytes)


def new_token() -> TokenCredentials:
    return TokenCredentials(
        key=generate_hex(settings.token_entropy_bytes),
        secret=generate_hex(settings.token_entropy_bytes),
    )


def new_verifier() -> str:
    return generate_hex(settings.token_entropy_bytes)
