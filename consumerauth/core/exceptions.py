from fastapi import HTTPException, status


class ConsumerAuthError(HTTPException):
    """Recoverable failure reported to the caller as a (kind, message) pair."""

    kind = "error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The request could not be completed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(
            status_code=self.status_code,
            detail={"error": self.kind, "message": self.message},
        )


# ---------------------------------------------------------------------------
# Actor / environment preconditions
# ---------------------------------------------------------------------------

class PermissionDeniedError(ConsumerAuthError):
    kind = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class NotLoggedInError(ConsumerAuthError):
    kind = "not_logged_in"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "You must be logged in to perform this action"


class UserBlockedError(ConsumerAuthError):
    kind = "user_blocked"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Your account is blocked"


class ReadOnlyError(ConsumerAuthError):
    kind = "readonly"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The consumer store is currently read-only"


class EmailNotConfirmedError(ConsumerAuthError):
    kind = "email_not_confirmed"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You must confirm your email address before proposing a consumer"


class EmailMismatchedError(ConsumerAuthError):
    kind = "email_mismatched"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "The submitted email does not match your confirmed email address"


class InvalidActionError(ConsumerAuthError):
    kind = "invalid_action"
    default_message = "Unknown consumer action"


# ---------------------------------------------------------------------------
# Consumer records and lifecycle
# ---------------------------------------------------------------------------

class InvalidConsumerKeyError(ConsumerAuthError):
    kind = "invalid_consumer_key"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "No consumer exists with the given key"


class ConsumerExistsError(ConsumerAuthError):
    kind = "consumer_exists"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A consumer with this name and an equal or newer version already exists"


class NotProposedError(ConsumerAuthError):
    kind = "not_proposed"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The consumer is not in a stage that allows this action"


class NotApprovedError(ConsumerAuthError):
    kind = "not_approved"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The consumer is not approved"


class NotDisabledError(ConsumerAuthError):
    kind = "not_disabled"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The consumer is not disabled"


class ChangeConflictError(ConsumerAuthError):
    kind = "change_conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The consumer was changed by someone else; reload and try again"


# ---------------------------------------------------------------------------
# Protocol layer
# ---------------------------------------------------------------------------

class BadConsumerError(ConsumerAuthError):
    kind = "bad_consumer"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid or unapproved consumer"


class IpRestrictedError(ConsumerAuthError):
    kind = "ip_restricted"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Requests for this consumer are not allowed from your IP address"


class InvalidSignatureError(ConsumerAuthError):
    kind = "invalid_signature"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid request signature"


class InvalidRequestTokenError(ConsumerAuthError):
    kind = "invalid_request_token"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid request token"


class InvalidVerifierError(ConsumerAuthError):
    kind = "invalid_verifier"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid verifier code"


class TokenAlreadyExchangedError(ConsumerAuthError):
    kind = "token_already_exchanged"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The request token has already been exchanged"


class ExpiredTokenError(ConsumerAuthError):
    kind = "expired_token"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "The request token has expired"


class InvalidUserError(ConsumerAuthError):
    kind = "invalid_user"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "The authorizing user was rejected"


class InvalidCallbackError(ConsumerAuthError):
    kind = "invalid_callback"
    default_message = "The callback URL does not match the registered callback"


class InvalidRequestError(ConsumerAuthError):
    kind = "invalid_request"
    default_message = "Malformed OAuth request"


class InvalidTimestampError(ConsumerAuthError):
    kind = "invalid_timestamp"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "The request timestamp is outside the allowed window"


class NonceUsedError(ConsumerAuthError):
    kind = "nonce_used"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "The request nonce has already been used"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class StorageUnavailableError(ConsumerAuthError):
    kind = "storage_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The consumer store is temporarily unavailable"


class ManagementScopeError(RuntimeError):
    """Consumer management was invoked outside the management site."""


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
