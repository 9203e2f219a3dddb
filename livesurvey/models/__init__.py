from livesurvey.models.survey import Question, QuestionType, Survey
from livesurvey.models.session import Participant, Session
from livesurvey.models.state import ResultsSnapshot

__all__ = ["Question", "QuestionType", "Survey", "Participant", "Session", "ResultsSnapshot"]
