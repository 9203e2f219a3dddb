from livesurvey.schemas.admin import (
    AttachSurvey,
    OptionItem,
    QuestionCreate,
    QuestionRead,
    QuestionUpdate,
    SessionCreate,
    SessionRead,
    SurveyCreate,
    SurveyRead,
)
from livesurvey.schemas.results import (
    CategorizationStats,
    PairedAssociationStats,
    ParticipantDetails,
    QuestionStats,
    RankedOrderStats,
    SessionResults,
    SingleChoiceStats,
)
from livesurvey.schemas.session import (
    AnswerMessage,
    ControlMessage,
    ControlOutcome,
    JoinMessage,
    JoinResult,
    ParticipantView,
    SessionView,
)

__all__ = [
    "AttachSurvey",
    "OptionItem",
    "QuestionCreate",
    "QuestionRead",
    "QuestionUpdate",
    "SessionCreate",
    "SessionRead",
    "SurveyCreate",
    "SurveyRead",
    "CategorizationStats",
    "PairedAssociationStats",
    "ParticipantDetails",
    "QuestionStats",
    "RankedOrderStats",
    "SessionResults",
    "SingleChoiceStats",
    "AnswerMessage",
    "ControlMessage",
    "ControlOutcome",
    "JoinMessage",
    "JoinResult",
    "ParticipantView",
    "SessionView",
]
