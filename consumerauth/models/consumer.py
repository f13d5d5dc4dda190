"""Registered OAuth consumers and the acceptances users grant them."""

import enum
import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from consumerauth.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def dump_grants(grants) -> str:
    """Serialize a grant list; order is preserved, duplicates dropped."""
    return json.dumps(list(dict.fromkeys(grants or [])))


def dump_restrictions(restrictions) -> str:
    return json.dumps(restrictions or {}, sort_keys=True)


class ConsumerStage(str, enum.Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISABLED = "disabled"
    EXPIRED = "expired"


class Consumer(Base):
    """A third-party application registered for API access."""

    __tablename__ = "oauth_consumers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    consumer_key = Column(String(32), unique=True, nullable=False)
    secret_key = Column(String(64), nullable=False)

    # Ownership
    name = Column(String(128), nullable=False)
    user_id = Column(Integer, nullable=False)
    wiki = Column(String(64), nullable=False, default="*")  # site key or "*"
    email = Column(String(255), nullable=False, default="")
    email_authenticated = Column(DateTime(timezone=True), nullable=True)
    developer_agreement = Column(Boolean, nullable=False, default=False)

    # Descriptive
    version = Column(String(32), nullable=False)
    description = Column(Text, nullable=False, default="")
    callback_url = Column(String(2000), nullable=False, default="")
    callback_is_prefix = Column(Boolean, nullable=False, default=False)
    rsa_key = Column(Text, nullable=False, default="")
    grant_type = Column(String(20), nullable=False, default="normal")  # authonly | authonlyprivate | normal
    grants = Column(Text, nullable=False, default="[]")  # JSON array of grant names
    restrictions = Column(Text, nullable=False, default="{}")  # JSON: {"IPAddresses": [...]}
    owner_only = Column(Boolean, nullable=False, default=False)
    oauth_version = Column(Integer, nullable=False, default=1)

    # Lifecycle
    registration = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    stage = Column(String(20), nullable=False, default=ConsumerStage.PROPOSED.value)
    stage_timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted = Column(Boolean, nullable=False, default=False)  # suppressed from ordinary admins

    # Optimistic concurrency: bumped on every persisted UPDATE
    revision = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": revision}

    __table_args__ = (
        UniqueConstraint("name", "user_id", "version", name="uq_consumer_name_owner_version"),
        Index("idx_consumer_owner", "user_id"),
        Index("idx_consumer_stage", "stage"),
        Index("idx_consumer_name_owner", "name", "user_id"),
    )

    def get_stage(self) -> ConsumerStage:
        return ConsumerStage(self.stage)

    def get_grants(self) -> list[str]:
        return json.loads(self.grants) if self.grants else []

    def get_restrictions(self) -> dict:
        return json.loads(self.restrictions) if self.restrictions else {}

    def concurrency_fields(self) -> dict:
        """Field state that the change token is derived from."""
        return {
            "id": self.id,
            "consumer_key": self.consumer_key,
            "name": self.name,
            "version": self.version,
            "user_id": self.user_id,
            "wiki": self.wiki,
            "callback_url": self.callback_url,
            "callback_is_prefix": bool(self.callback_is_prefix),
            "description": self.description,
            "rsa_key": self.rsa_key,
            "grants": self.grants,
            "restrictions": self.restrictions,
            "secret_key": self.secret_key,
            "owner_only": bool(self.owner_only),
            "stage": self.stage,
            "deleted": bool(self.deleted),
            "revision": self.revision,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "consumer_key": self.consumer_key,
            "name": self.name,
            "version": self.version,
            "user_id": self.user_id,
            "wiki": self.wiki,
            "description": self.description,
            "callback_url": self.callback_url,
            "callback_is_prefix": bool(self.callback_is_prefix),
            "grant_type": self.grant_type,
            "grants": self.get_grants(),
            "restrictions": self.get_restrictions(),
            "has_rsa_key": bool(self.rsa_key),
            "owner_only": bool(self.owner_only),
            "stage": self.stage,
            "stage_timestamp": self.stage_timestamp.isoformat() if self.stage_timestamp else None,
            "registration": self.registration.isoformat() if self.registration else None,
            "deleted": bool(self.deleted),
        }


class ConsumerAcceptance(Base):
    """A user's grant of authority to a consumer, with the issued access credential."""

    __tablename__ = "oauth_acceptances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wiki = Column(String(64), nullable=False)
    user_id = Column(Integer, nullable=False)
    consumer_id = Column(Integer, ForeignKey("oauth_consumers.id"), nullable=False)
    access_token = Column(String(128), unique=True, nullable=False)
    access_secret = Column(String(128), nullable=False)
    grants = Column(Text, nullable=False, default="[]")  # JSON array, subset of consumer grants
    accepted = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    oauth_version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("user_id", "consumer_id", "wiki", name="uq_acceptance_user_consumer_wiki"),
        Index("idx_acceptance_consumer", "consumer_id"),
    )

    def get_grants(self) -> list[str]:
        return json.loads(self.grants) if self.grants else []
