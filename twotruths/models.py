from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from datetime import datetime


class Game(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    creator_session: str = Field(index=True)
    teammate_name: str
    teammate_picture: Optional[str] = None
    statement_1: str
    statement_2: str
    statement_3: str
    lie_index: int
    timer_duration: Optional[int] = None
    timer_start_time: Optional[datetime] = None
    background_music: Optional[str] = None
    lie_revealed: bool = False
    game_started: bool = False
    created_at: Optional[datetime] = Field(default=None, index=True)
    updated_at: Optional[datetime] = None

    @property
    def statements(self):
        return [self.statement_1, self.statement_2, self.statement_3]


class Vote(SQLModel, table=True):
    # one vote per browser session per game; the store relies on this constraint
    __table_args__ = (UniqueConstraint("game_id", "user_session", name="uq_vote_game_session"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: str = Field(
        sa_column=Column(String, ForeignKey("game.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    user_session: str
    voted_statement: int
    user_ip: Optional[str] = None
    user_agent: Optional[str] = None
    voted_at: Optional[datetime] = None
