"""Error taxonomy shared by the store, the ledger and the dispatcher.

Every error carries a stable ``code`` and a client-safe ``message``; internal
details stay in the logs.
"""


class ChatError(Exception):

    code = "chat_error"
    status_code = 400
    retryable = False
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code, "retryable": self.retryable}


class NotAuthenticated(ChatError):

    code = "not_authenticated"
    status_code = 401
    default_message = "Authentication required"


class NotAuthorized(ChatError):

    code = "not_authorized"
    status_code = 403
    default_message = "Not authorized for this conversation"


class NotFound(ChatError):

    code = "not_found"
    status_code = 404
    default_message = "Resource not found"


class ConversationNotFound(NotFound):

    default_message = "Conversation not found"


class MessageNotFound(NotFound):

    default_message = "Message not found"


class ConversationNotActive(ChatError):

    code = "conversation_not_active"
    status_code = 409
    default_message = "Conversation is not active"


class MessageDeleted(ChatError):

    code = "message_deleted"
    status_code = 409
    default_message = "Cannot edit a deleted message"


class DuplicateConversation(ChatError):

    code = "duplicate_conversation"
    status_code = 409
    default_message = "Conversation already exists for this item"


class ValidationFailed(ChatError):

    code = "validation_failed"
    status_code = 422
    default_message = "Invalid request"


class RateLimited(ChatError):

    code = "rate_limited"
    status_code = 429
    retryable = True
    default_message = "Too many requests, please try again later"


class TransientStoreFailure(ChatError):

    code = "store_unavailable"
    status_code = 503
    retryable = True
    default_message = "Storage temporarily unavailable, please retry"
