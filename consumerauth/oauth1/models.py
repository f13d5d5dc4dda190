"""SQLAlchemy models for the OAuth 1.0a token exchange."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint

from consumerauth.database import Base


def utcnow():
    return datetime.now(timezone.utc)


# Request token status: issued -> authorized -> exchanged, never backwards
TOKEN_ISSUED = "issued"
TOKEN_AUTHORIZED = "authorized"
TOKEN_EXCHANGED = "exchanged"


class OAuthToken(Base):
    """Single-use request token carried between the handshake steps."""

    __tablename__ = "oauth_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token_key = Column(String(128), unique=True, nullable=False)
    secret = Column(String(128), nullable=False)
    token_type = Column(String(10), nullable=False, default="request")
    consumer_key = Column(String(32), nullable=False)
    callback_url = Column(String(2000), nullable=True)  # NULL = out-of-band
    verifier = Column(String(128), nullable=True)
    access_key = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default=TOKEN_ISSUED)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    exchanged_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_oauth_token_key", "token_key"),
        Index("idx_oauth_token_consumer", "consumer_key"),
    )


class OAuthNonce(Base):
    """Nonces seen per consumer/token/timestamp, for replay protection."""

    __tablename__ = "oauth_nonces"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    consumer_key = Column(String(32), nullable=False)
    token_key = Column(String(128), nullable=False, default="")
    nonce = Column(String(255), nullable=False)
    timestamp = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("consumer_key", "token_key", "nonce", "timestamp", name="uq_oauth_nonce"),
    )
