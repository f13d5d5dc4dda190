from datetime import datetime
from urllib.parse import urlsplit

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, Field, field_validator, model_validator

from consumerauth.oauth1.signature import load_rsa_public_key

BLOB_SIZE = 65535

CONSUMER_KEY_PATTERN = "^[0-9a-f]{32}$"
CHANGE_TOKEN_PATTERN = "^[0-9a-f]{40}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _check_rsa_key(value: str | None) -> str | None:
    if value is None or not value.strip():
        return value
    if len(value) > BLOB_SIZE:
        raise ValueError("RSA key is too long")
    if load_rsa_public_key(value) is None:
        raise ValueError("rsa_key must be a PEM-encoded RSA public key")
    return value


def _check_restrictions(value: dict | None) -> dict | None:
    if value is None:
        return value
    ranges = value.get("IPAddresses", [])
    if isinstance(ranges, str):
        ranges = [ranges]
    if not isinstance(ranges, list) or not all(isinstance(r, str) for r in ranges):
        raise ValueError("restrictions.IPAddresses must be a list of IP ranges")
    return value


class ProposeRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    version: str = Field(..., min_length=1, max_length=32)
    description: str = Field(default="", max_length=BLOB_SIZE)
    callback_url: str = Field(default="", max_length=2000)
    callback_is_prefix: bool = False
    email: str = Field(..., pattern=EMAIL_PATTERN)
    wiki: str = "*"
    grant_type: str = Field(default="normal", pattern="^(authonly|authonlyprivate|normal)$")
    grants: list[str] = []
    restrictions: dict = {}
    rsa_key: str = ""
    owner_only: bool = False
    agreement: bool

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        try:
            Version(value)
        except InvalidVersion:
            raise ValueError(f"Invalid version string: {value}")
        return value

    @field_validator("agreement")
    @classmethod
    def validate_agreement(cls, value: bool) -> bool:
        if not value:
            raise ValueError("The developer agreement must be accepted")
        return value

    @field_validator("rsa_key")
    @classmethod
    def validate_rsa_key(cls, value):
        return _check_rsa_key(value)

    @field_validator("restrictions")
    @classmethod
    def validate_restrictions(cls, value):
        return _check_restrictions(value)

    @model_validator(mode="after")
    def validate_callback(self):
        if self.owner_only:
            return self
        parts = urlsplit(self.callback_url)
        if not parts.scheme or not parts.netloc:
            raise ValueError("callback_url must be an absolute URL")
        return self


class ConsumerActionRequest(BaseModel):
    change_token: str = Field(..., pattern=CHANGE_TOKEN_PATTERN)
    reason: str = Field(default="", max_length=255)
    suppress: bool = False
    # update only
    rsa_key: str | None = None
    restrictions: dict | None = None
    reset_secret: bool = False

    @field_validator("rsa_key")
    @classmethod
    def validate_rsa_key(cls, value):
        return _check_rsa_key(value)

    @field_validator("restrictions")
    @classmethod
    def validate_restrictions(cls, value):
        return _check_restrictions(value)


class ConsumerResponse(BaseModel):
    id: int
    consumer_key: str
    name: str
    version: str
    user_id: int
    wiki: str
    description: str
    callback_url: str
    callback_is_prefix: bool
    grant_type: str
    grants: list[str]
    restrictions: dict
    has_rsa_key: bool
    owner_only: bool
    stage: str
    stage_timestamp: str | None
    registration: str | None
    deleted: bool
    change_token: str


class AccessTokenResponse(BaseModel):
    key: str
    secret: str


class ActionResponse(BaseModel):
    consumer: ConsumerResponse
    changed: bool
    # Only returned to the owner, on proposal or secret reset
    secret_key: str | None = None
    access_token: AccessTokenResponse | None = None


class LogEntryResponse(BaseModel):
    action: str
    performer_id: int
    performer_name: str
    comment: str
    created_at: datetime
    entry_hash: str | None = None
