"""Error taxonomy for the live survey service.

Services raise these the same way they would raise a plain ``HTTPException``;
FastAPI renders them for HTTP routes and the WebSocket handler turns them into
``{"type": "error"}`` messages.
"""

from fastapi import HTTPException


class SessionNotFound(HTTPException):
    def __init__(self, session_id: str):
        super().__init__(status_code=404, detail="Session not found")
        self.session_id = session_id


class SessionAlreadyExists(HTTPException):
    def __init__(self, session_id: str):
        super().__init__(status_code=409, detail="Session already exists")
        self.session_id = session_id


class SessionAlreadyStarted(HTTPException):
    def __init__(self, session_id: str):
        super().__init__(status_code=409, detail="Session has already started")
        self.session_id = session_id


class SurveyNotFound(HTTPException):
    def __init__(self, survey_id: str):
        super().__init__(status_code=404, detail="Survey not found")
        self.survey_id = survey_id


class QuestionNotFound(HTTPException):
    def __init__(self, question_id: str):
        super().__init__(status_code=404, detail="Question not found")
        self.question_id = question_id


class SurveyLocked(HTTPException):
    def __init__(self, survey_id: str):
        super().__init__(status_code=409, detail="Survey is attached to an active session")
        self.survey_id = survey_id


class ParticipantNotFound(HTTPException):
    def __init__(self, name: str):
        super().__init__(status_code=404, detail="Participant not found")
        self.name = name


class NoSurveyAttached(HTTPException):
    def __init__(self, session_id: str):
        super().__init__(status_code=409, detail="No survey attached to this session")
        self.session_id = session_id


class EmptyQuestionSet(HTTPException):
    def __init__(self, session_id: str):
        super().__init__(status_code=409, detail="Survey has no questions to run")
        self.session_id = session_id


class InvalidAnswerShape(HTTPException):
    def __init__(self, reason: str):
        super().__init__(status_code=422, detail=f"Invalid answer: {reason}")
        self.reason = reason


class QuestionNotOpen(HTTPException):
    def __init__(self, question_index: int):
        super().__init__(status_code=409, detail="Question is not open for answers")
        self.question_index = question_index


class SpectatorForbidden(HTTPException):
    def __init__(self, name: str):
        super().__init__(status_code=403, detail="Spectators cannot submit answers")
        self.name = name


class UnauthorizedControl(Exception):
    """Control intent from someone other than the session admin.

    Never leaves the controller: the intent is logged and ignored.
    """

    def __init__(self, session_id: str, actor: str | None):
        super().__init__(f"{actor!r} is not admin of session {session_id}")
        self.session_id = session_id
        self.actor = actor


class CorruptParticipantRecord(Exception):
    """A stored answer map that cannot be read at aggregation time."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"participant {name!r}: {reason}")
        self.name = name
        self.reason = reason
