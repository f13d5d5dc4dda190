from consumerauth.models.consumer import Consumer, ConsumerAcceptance, ConsumerStage
from consumerauth.models.audit_log import ConsumerLogEntry
from consumerauth.oauth1.models import OAuthNonce, OAuthToken

__all__ = [
    "Consumer",
    "ConsumerAcceptance",
    "ConsumerStage",
    "ConsumerLogEntry",
    "OAuthToken",
    "OAuthNonce",
]
