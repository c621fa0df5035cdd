"""Error taxonomy of the chat engine.

Every error carries a stable ``code`` that is sent to the originating
connection inside a ``rejected`` event, and an HTTP status used when the
same error surfaces through the REST routers.
"""


class ChatError(Exception):
    code = "ChatError"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class UnauthorizedUser(ChatError):
    """user is not authenticated or not approved"""
    code = "UnauthorizedUser"
    status_code = 401


class Forbidden(ChatError):
    """role or visibility violation"""
    code = "Forbidden"
    status_code = 403


class NotFound(ChatError):
    code = "NotFound"
    status_code = 404


class NotAMember(ChatError):
    code = "NotAMember"
    status_code = 403


class DuplicateRoom(ChatError):
    code = "DuplicateRoom"
    status_code = 409


class InvalidReplyTarget(ChatError):
    code = "InvalidReplyTarget"
    status_code = 400


class RateLimited(ChatError):
    code = "RateLimited"
    status_code = 429


class InvalidEvent(ChatError):
    """inbound frame that does not match any known event shape"""
    code = "InvalidEvent"
    status_code = 422
