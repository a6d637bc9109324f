from typing import Any, Dict


class GameError(Exception):
    """Base class for failures reported back to the caller."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Something went wrong"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {"message": self.message, "code": self.code},
            "message": self.message,
        }


class InvalidInput(GameError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Invalid input"


class VotingClosed(InvalidInput):
    status_code = 409
    code = "VOTING_CLOSED"
    default_message = "Voting is closed for this game"


class GameNotFound(GameError):
    status_code = 404
    code = "GAME_NOT_FOUND"
    default_message = "Game not found"


class DuplicateVote(GameError):
    # a conflict, not a client fault: the UI moves to its "already voted" view
    status_code = 409
    code = "DUPLICATE_VOTE"
    default_message = "User has already voted for this game"


class Forbidden(GameError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Only the game creator can reveal the lie"


class AuthenticationRequired(GameError):
    status_code = 401
    code = "AUTH_REQUIRED"
    default_message = "Authentication required"


class StorageError(GameError):
    status_code = 503
    code = "SERVICE_ERROR"
    default_message = "Storage unavailable"
