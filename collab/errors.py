"""
Error taxonomy for the realtime coordinator

Handlers raise these; the dispatcher turns them into a sender-only event.
"""
from typing import Iterable, Optional


class CollabError(Exception):
    """Base error reported to the initiating connection only"""

    event = "error"
    code = "error"

    def __init__(self, message: str, execution_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.execution_id = execution_id

    def payload(self) -> dict:
        data = {"message": self.message, "code": self.code}
        if self.event == "execution-error":
            data["error"] = self.message
        if self.execution_id:
            data["executionId"] = self.execution_id
        return data


class NotFound(CollabError):
    code = "not_found"


class RoomNotFound(NotFound):
    code = "room_not_found"

    def __init__(self, message: str = "Room not found"):
        super().__init__(message)


class ExecutionNotFound(NotFound):
    event = "execution-error"
    code = "execution_not_found"

    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} not found", execution_id)


class FileNotFound(NotFound):
    code = "file_not_found"


class Forbidden(CollabError):
    code = "forbidden"


class ExecutionNotAllowed(Forbidden):
    event = "execution-error"
    code = "execution_not_allowed"

    def __init__(self, message: str = "Code execution not allowed in this room"):
        super().__init__(message)


class NotRoomMember(Forbidden):
    code = "not_room_member"

    def __init__(self, message: str = "Not a member of this room"):
        super().__init__(message)


class WhiteboardDisabled(Forbidden):
    code = "whiteboard_disabled"

    def __init__(self, message: str = "Whiteboard is disabled in this room"):
        super().__init__(message)


class ProtocolMisuse(CollabError):
    code = "protocol_misuse"


class MissingField(ProtocolMisuse):
    code = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}")
        self.field = field


class UnsupportedLanguage(ProtocolMisuse):
    event = "execution-error"
    code = "unsupported_language"

    def __init__(self, language: str, supported: Iterable[str], execution_id: Optional[str] = None):
        super().__init__(
            f"Unsupported language: {language}. Supported: {', '.join(sorted(supported))}",
            execution_id,
        )
        self.language = language


class ExternalServiceFailure(CollabError):
    event = "execution-error"
    code = "execution_failed"


class PersistenceFailure(CollabError):
    code = "persistence_failed"


class AuthenticationFailed(Exception):
    """Connection-level failure: the socket is never registered"""
