"""
Boundary schemas: HTTP bodies and push-channel commands.

Everything past this module works with validated, typed values only.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictInt, TypeAdapter, ValidationError, field_validator

from .errors import InvalidInput


def _strip_required(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


class CreateGameRequest(BaseModel):
    teammate_name: str = Field(..., min_length=1, max_length=255)
    teammate_picture: Optional[str] = None
    statement_1: str = Field(..., min_length=1, max_length=1000)
    statement_2: str = Field(..., min_length=1, max_length=1000)
    statement_3: str = Field(..., min_length=1, max_length=1000)
    # range is checked by the service so it reports as InvalidInput
    lie_index: StrictInt
    timer_duration: Optional[int] = Field(None, ge=0, le=86400)
    background_music: Optional[str] = None
    creator_session: str = Field(..., min_length=1, max_length=255)
    session: Optional[str] = Field(None, max_length=200)

    @field_validator("teammate_name", "statement_1", "statement_2", "statement_3", "creator_session")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _strip_required(v)

    @property
    def statements(self) -> List[str]:
        return [self.statement_1, self.statement_2, self.statement_3]


class VoteRequest(BaseModel):
    game_id: str = Field(..., min_length=1, max_length=255)
    voted_statement: StrictInt
    user_session: str = Field(..., min_length=1, max_length=255)

    @field_validator("game_id", "user_session")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _strip_required(v)


class RevealLieRequest(BaseModel):
    creator_session: Optional[str] = Field(None, max_length=255)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=256)


class SessionBody(BaseModel):
    session: Optional[str] = Field(None, max_length=200)


# Push-channel commands, discriminated on "type"

class JoinGameCommand(BaseModel):
    type: Literal["joinGame"]
    gameId: str = Field(..., min_length=1, max_length=255)
    userSession: str = Field(..., min_length=1, max_length=255)
    isAdmin: bool = False


class RequestVoteUpdateCommand(BaseModel):
    type: Literal["requestVoteUpdate"]
    gameId: str = Field(..., min_length=1, max_length=255)


class ResyncCommand(BaseModel):
    type: Literal["resync"]
    gameId: str = Field(..., min_length=1, max_length=255)


class RevealLieCommand(BaseModel):
    type: Literal["revealLie"]
    gameId: str = Field(..., min_length=1, max_length=255)


class TimerUpdateCommand(BaseModel):
    type: Literal["timerUpdate"]
    gameId: str = Field(..., min_length=1, max_length=255)
    timeRemaining: float = Field(..., ge=0)


class PingCommand(BaseModel):
    type: Literal["ping"]


Command = Annotated[
    Union[
        JoinGameCommand,
        RequestVoteUpdateCommand,
        ResyncCommand,
        RevealLieCommand,
        TimerUpdateCommand,
        PingCommand,
    ],
    Field(discriminator="type"),
]

_command_adapter = TypeAdapter(Command)


def parse_command(raw: str):
    """Parse one text frame into a typed command or raise InvalidInput."""
    try:
        return _command_adapter.validate_json(raw)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "message"
        raise InvalidInput(f"Malformed command ({where}: {first.get('msg', 'invalid')})") from exc
