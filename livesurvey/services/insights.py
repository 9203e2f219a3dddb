"""Per-participant views of a finished session.

Readable answers, how close two participants answered, and which options a
participant kept picking. Only answers that parse for their question count;
anything else is treated as unanswered.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from livesurvey.core.errors import InvalidAnswerShape
from livesurvey.models.survey import DEFAULT_CATEGORY_A, DEFAULT_CATEGORY_B, QuestionType
from livesurvey.schemas import QuestionRead
from livesurvey.schemas.results import ParticipantDetail, PreferenceEntry, SimilarityEntry
from livesurvey.services.aggregator import raw_answer, readable_records
from livesurvey.services.answer_shapes import (
    Answer,
    CategorizationAnswer,
    PairedAssociationAnswer,
    RankedOrderAnswer,
    SingleChoiceAnswer,
    parse_answer,
)

logger = logging.getLogger("aggregator")

Parsed = Dict[int, Answer]


def parsed_answers(questions: Sequence[QuestionRead], answers: Mapping[Any, Any]) -> Parsed:
    parsed = {}
    for index, question in enumerate(questions):
        raw = raw_answer(answers, index)
        if raw is None:
            continue
        try:
            parsed[index] = parse_answer(question, raw)
        except InvalidAnswerShape:
            continue
    return parsed


def describe_answer(question: QuestionRead, answer: Answer) -> str:
    if isinstance(answer, SingleChoiceAnswer):
        return question.option_text(answer.option)
    if isinstance(answer, RankedOrderAnswer):
        return ", ".join(
            f"{position + 1}. {question.option_text(option)}" for position, option in enumerate(answer.order)
        )
    if isinstance(answer, PairedAssociationAnswer):
        return ", ".join(f"{question.option_text(a)} ↔ {question.option_text(b)}" for a, b in answer.pairs)
    labels = (question.category_a or DEFAULT_CATEGORY_A, question.category_b or DEFAULT_CATEGORY_B)
    return ", ".join(f"{question.option_text(option)}: {labels[category]}" for option, category in answer.placements)


def agreement(first: Answer, second: Answer) -> float:
    """Agreement between two answers to the same question, 0.0 to 1.0."""
    if isinstance(first, SingleChoiceAnswer) and isinstance(second, SingleChoiceAnswer):
        return 1.0 if first.option == second.option else 0.0
    if isinstance(first, RankedOrderAnswer) and isinstance(second, RankedOrderAnswer):
        size = len(first.order)
        if size < 2 or size != len(second.order):
            return 1.0 if first.order == second.order else 0.0
        distance = sum(abs(first.position_of(option) - second.position_of(option)) for option in first.order)
        # a reversed order can push the raw score below zero
        return max(0.0, 1 - distance / (size * (size - 1) / 2))
    if isinstance(first, PairedAssociationAnswer) and isinstance(second, PairedAssociationAnswer):
        mine, theirs = first.pair_keys(), second.pair_keys()
        union = mine | theirs
        return len(mine & theirs) / len(union) if union else 0.0
    if isinstance(first, CategorizationAnswer) and isinstance(second, CategorizationAnswer):
        mine, theirs = first.as_dict(), second.as_dict()
        shared = mine.keys() & theirs.keys()
        if not shared:
            return 0.0
        return sum(1 for option in shared if mine[option] == theirs[option]) / len(shared)
    return 0.0


def similarity(first: Parsed, second: Parsed) -> float:
    """Mean agreement over the questions both answered, as a percentage."""
    common = sorted(first.keys() & second.keys())
    if not common:
        return 0.0
    return sum(agreement(first[index], second[index]) for index in common) / len(common) * 100


def preferences(questions: Sequence[QuestionRead], answers: Parsed) -> tuple:
    counts: Counter = Counter()
    category_totals = [0, 0]
    for index, answer in sorted(answers.items()):
        question = questions[index]
        kind = QuestionType(question.type).value
        if isinstance(answer, SingleChoiceAnswer):
            counts[(question.option_text(answer.option), kind)] += 1
        elif isinstance(answer, RankedOrderAnswer):
            counts[(question.option_text(answer.order[0]), kind)] += 1
        elif isinstance(answer, PairedAssociationAnswer):
            for pair in answer.pairs:
                for option in pair:
                    counts[(question.option_text(option), kind)] += 1
        elif isinstance(answer, CategorizationAnswer):
            for _, category in answer.placements:
                category_totals[category] += 1

    entries = [
        PreferenceEntry(option_text=text, question_type=question_type, count=count)
        for (text, question_type), count in counts.items()
    ]
    entries.sort(key=lambda entry: (-entry.count, entry.option_text, entry.question_type))
    return entries, category_totals[0], category_totals[1]


def participant_details(questions: Sequence[QuestionRead], answer_maps: Mapping[str, Any]) -> List[ParticipantDetail]:
    records = readable_records(answer_maps)
    parsed = {name: parsed_answers(questions, answers) for name, answers in records}

    details = []
    for name, answers in parsed.items():
        readable: Dict[int, Optional[str]] = {
            index: describe_answer(questions[index], answers[index]) if index in answers else None
            for index in range(len(questions))
        }
        similar = [
            SimilarityEntry(name=other, similarity=round(similarity(answers, other_answers), 1))
            for other, other_answers in parsed.items()
            if other != name
        ]
        similar.sort(key=lambda entry: (-entry.similarity, entry.name))
        preferred, category_a_total, category_b_total = preferences(questions, answers)
        details.append(
            ParticipantDetail(
                name=name,
                answers=readable,
                similar=similar,
                preferences=preferred,
                category_a_total=category_a_total,
                category_b_total=category_b_total,
            )
        )
    logger.debug("Built details for %s participant(s)", len(details))
    return details
