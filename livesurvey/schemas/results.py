from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class OptionTally(BaseModel):
    option: int
    count: int


class SingleChoiceStats(BaseModel):
    type: Literal["multiple-choice"] = "multiple-choice"
    question_index: int
    question: str
    total_votes: int = 0
    # only options that received at least one vote
    votes: Dict[int, int] = Field(default_factory=dict)
    # every option, most votes first
    tally: List[OptionTally] = Field(default_factory=list)
    # set only when the top count strictly beats the runner-up
    winner: Optional[int] = None


class RankingAverage(BaseModel):
    average: float
    count: int


class RankingEntry(BaseModel):
    option: int
    average: float
    count: int


class RankedOrderStats(BaseModel):
    type: Literal["ranking"] = "ranking"
    question_index: int
    question: str
    total_votes: int = 0
    ranking_averages: Dict[int, RankingAverage] = Field(default_factory=dict)
    # most preferred first; unranked options sit at the worst position
    ordering: List[RankingEntry] = Field(default_factory=list)


class PairTally(BaseModel):
    first: int
    second: int
    count: int


class PairedAssociationStats(BaseModel):
    type: Literal["pairing"] = "pairing"
    question_index: int
    question: str
    total_votes: int = 0
    # "first,second" with first < second
    couple_votes: Dict[str, int] = Field(default_factory=dict)
    ordering: List[PairTally] = Field(default_factory=list)


class CategoryCounts(BaseModel):
    category_a: int = 0
    category_b: int = 0


class CategorizationStats(BaseModel):
    type: Literal["categorization"] = "categorization"
    question_index: int
    question: str
    total_votes: int = 0
    category_a: str
    category_b: str
    categories: Dict[int, CategoryCounts] = Field(default_factory=dict)


QuestionStats = Union[SingleChoiceStats, RankedOrderStats, PairedAssociationStats, CategorizationStats]


class SessionResults(BaseModel):
    session_id: str
    participant_count: int
    questions: List[QuestionStats] = Field(default_factory=list)


class SimilarityEntry(BaseModel):
    name: str
    similarity: float


class PreferenceEntry(BaseModel):
    option_text: str
    question_type: str
    count: int


class ParticipantDetail(BaseModel):
    name: str
    answers: Dict[int, Optional[str]] = Field(default_factory=dict)
    similar: List[SimilarityEntry] = Field(default_factory=list)
    preferences: List[PreferenceEntry] = Field(default_factory=list)
    category_a_total: int = 0
    category_b_total: int = 0


class ParticipantDetails(BaseModel):
    session_id: str
    participants: List[ParticipantDetail] = Field(default_factory=list)
