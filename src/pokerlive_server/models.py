from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional


DEFAULT_TITLE = "Sprint Planning Session"
DEFAULT_SCALE = ["0", "1", "2", "3", "5", "8", "?"]

STORY_POINT_SCALES: Dict[str, List[str]] = {
    "fibonacci_0_8": DEFAULT_SCALE,
    "fibonacci_1_8": ["1", "2", "3", "5", "8", "?"],
    "fibonacci_0_13": ["0", "1", "2", "3", "5", "8", "13", "?"],
    "tshirt": ["XS", "S", "M", "L", "XL", "?"],
    "linear": ["1", "2", "3", "4", "5", "6", "7", "8", "?"],
}


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Participant(CamelModel):
    name: str
    voted: bool = False
    vote: Optional[str] = None
    is_host: bool = False
    is_observer: bool = False
    # epoch milliseconds
    last_seen: Optional[int] = None


class VotingState(CamelModel):
    voting_in_progress: bool = False
    votes_revealed: bool = False
    vote_average: str = ""
    final_estimate: str = ""
    current_round: int = 1
    current_round_description: str = "Round 1"


class SessionSnapshot(CamelModel):
    session_code: str
    title: str
    participants: List[Participant] = Field(default_factory=list)
    voting_state: VotingState = Field(default_factory=VotingState)
    story_point_scale: List[str] = Field(default_factory=lambda: list(DEFAULT_SCALE))
    created_at: str = ""
    last_updated: str

    def public(self) -> Dict[str, Any]:
        """Wire representation shared by REST responses and stream events."""
        return self.model_dump(by_alias=True, exclude={"created_at"}, exclude_none=True)


class Round(CamelModel):
    round_number: int
    description: str
    votes: Dict[str, str] = Field(default_factory=dict)
    vote_average: str = ""
    final_estimate: str = ""
    # epoch milliseconds
    timestamp: int


class RecentSession(CamelModel):
    session_code: str
    player_name: str
    session_title: Optional[str] = None
    is_host: bool = False
    # epoch milliseconds
    last_accessed: int
    user_id: str


# Request bodies

class ScaleChoice(CamelModel):
    """An explicit card list, or the name of one of ``STORY_POINT_SCALES``."""

    story_point_scale: Optional[List[str]] = Field(default=None, min_length=1)
    scale_name: Optional[str] = None

    @field_validator("scale_name")
    @classmethod
    def _known_scale(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in STORY_POINT_SCALES:
            raise ValueError(f"unknown scale, expected one of {sorted(STORY_POINT_SCALES)}")
        return v

    def resolved_scale(self) -> Optional[List[str]]:
        # An explicit list wins over a named preset.
        if self.story_point_scale is not None:
            return self.story_point_scale
        if self.scale_name is not None:
            return list(STORY_POINT_SCALES[self.scale_name])
        return None


class CreateSessionIn(ScaleChoice):
    host_name: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1)
    title: Optional[str] = Field(default=None, max_length=255)


class JoinSessionIn(CamelModel):
    player_name: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1)
    is_observer: bool = False


class ParticipantUpdate(CamelModel):
    voted: Optional[bool] = None
    vote: Optional[str] = Field(default=None, max_length=10)
    is_observer: Optional[bool] = None
    last_seen: Optional[int] = None


class VotingStateUpdate(CamelModel):
    voting_in_progress: Optional[bool] = None
    votes_revealed: Optional[bool] = None
    vote_average: Optional[str] = Field(default=None, max_length=10)
    final_estimate: Optional[str] = Field(default=None, max_length=10)


class SessionUpdate(ScaleChoice):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)


class CreateRoundIn(CamelModel):
    new_round_description: str = ""
    complete_current_round: bool = False
    vote_average: Optional[str] = None
    final_estimate: Optional[str] = None


class SaveRoundIn(CamelModel):
    round_number: int = Field(..., ge=1)
    description: str = ""
    votes: Dict[str, str] = Field(default_factory=dict)
    vote_average: str = ""
    final_estimate: str = ""


class VerifyHostIn(CamelModel):
    user_id: str = Field(..., min_length=1)
    player_name: str = Field(..., min_length=1)


class TrackParticipantIn(CamelModel):
    user_id: str = Field(..., min_length=1)
    is_host: bool = False
