"""Per-question statistics computed from participants' answer maps.

Everything here is pure: the same questions and answer maps always produce
the same statistics, so results can be recomputed from a snapshot at any time.
A malformed answer only removes itself from the tally.
"""

import logging
from collections import Counter
from typing import Annotated, Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import Field, TypeAdapter

from livesurvey.core.errors import CorruptParticipantRecord, InvalidAnswerShape
from livesurvey.models.survey import DEFAULT_CATEGORY_A, DEFAULT_CATEGORY_B, QuestionType
from livesurvey.schemas.admin import QuestionRead
from livesurvey.schemas.results import (
    CategorizationStats,
    CategoryCounts,
    OptionTally,
    PairedAssociationStats,
    PairTally,
    QuestionStats,
    RankedOrderStats,
    RankingAverage,
    RankingEntry,
    SingleChoiceStats,
)
from livesurvey.services.answer_shapes import Answer, parse_answer

logger = logging.getLogger("aggregator")

_stats_adapter = TypeAdapter(List[Annotated[QuestionStats, Field(discriminator="type")]])

Record = Tuple[str, Mapping[str, Any]]


def readable_records(answer_maps: Mapping[str, Any]) -> List[Record]:
    """Participants' answer maps sorted by name, minus unreadable ones."""
    records = []
    for name in sorted(answer_maps):
        try:
            records.append((name, _answers_of(name, answer_maps[name])))
        except CorruptParticipantRecord as exc:
            logger.warning("Skipping participant record: %s", exc)
    return records


def _answers_of(name: str, answers: Any) -> Mapping[str, Any]:
    if answers is None:
        return {}
    if not isinstance(answers, Mapping):
        raise CorruptParticipantRecord(name, f"answers is {type(answers).__name__}, not a mapping")
    return answers


def raw_answer(answers: Mapping[Any, Any], question_index: int) -> Any:
    # Stored maps use string keys; in-memory ones may still use ints
    if str(question_index) in answers:
        return answers[str(question_index)]
    return answers.get(question_index)


def valid_answers(question: QuestionRead, question_index: int, records: Iterable[Record]) -> List[Answer]:
    collected = []
    for name, answers in records:
        raw = raw_answer(answers, question_index)
        if raw is None:
            continue
        try:
            collected.append(parse_answer(question, raw))
        except InvalidAnswerShape as exc:
            logger.debug(
                "Excluded answer participant=%s question=%s reason=%s", name, question_index, exc.reason
            )
    return collected


def clear_winner(tally: Sequence[OptionTally]) -> Optional[int]:
    """Top option of a count-sorted tally, unless it is tied or has no votes."""
    if not tally or tally[0].count <= 0:
        return None
    if len(tally) > 1 and tally[1].count >= tally[0].count:
        return None
    return tally[0].option


def single_choice_stats(question: QuestionRead, question_index: int, answers: List[Answer]) -> SingleChoiceStats:
    counts = Counter(answer.option for answer in answers)
    tally = sorted(
        (OptionTally(option=option, count=counts.get(option, 0)) for option in range(len(question.options))),
        key=lambda entry: (-entry.count, entry.option),
    )
    return SingleChoiceStats(
        question_index=question_index,
        question=question.text,
        total_votes=len(answers),
        votes={option: counts[option] for option in sorted(counts)},
        tally=tally,
        winner=clear_winner(tally),
    )


def ranked_order_stats(question: QuestionRead, question_index: int, answers: List[Answer]) -> RankedOrderStats:
    size = len(question.options)
    positions: dict[int, list[int]] = {option: [] for option in range(size)}
    for answer in answers:
        for position, option in enumerate(answer.order):
            positions[option].append(position)

    averages = {
        option: RankingAverage(average=sum(seen) / len(seen), count=len(seen))
        for option, seen in positions.items()
        if seen
    }
    # Unranked options are treated as last so ordering never depends on NaN
    worst = float(size - 1)
    ordering = sorted(
        (
            RankingEntry(
                option=option,
                average=averages[option].average if option in averages else worst,
                count=averages[option].count if option in averages else 0,
            )
            for option in range(size)
        ),
        key=lambda entry: (entry.average, entry.option),
    )
    return RankedOrderStats(
        question_index=question_index,
        question=question.text,
        total_votes=len(answers),
        ranking_averages=averages,
        ordering=ordering,
    )


def paired_association_stats(
    question: QuestionRead, question_index: int, answers: List[Answer]
) -> PairedAssociationStats:
    counts: Counter = Counter()
    for answer in answers:
        counts.update(answer.pairs)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return PairedAssociationStats(
        question_index=question_index,
        question=question.text,
        total_votes=len(answers),
        couple_votes={f"{first},{second}": count for (first, second), count in ranked},
        ordering=[PairTally(first=first, second=second, count=count) for (first, second), count in ranked],
    )


def categorization_stats(question: QuestionRead, question_index: int, answers: List[Answer]) -> CategorizationStats:
    categories = {option: CategoryCounts() for option in range(len(question.options))}
    for answer in answers:
        for option, category in answer.placements:
            if category == 0:
                categories[option].category_a += 1
            else:
                categories[option].category_b += 1
    return CategorizationStats(
        question_index=question_index,
        question=question.text,
        total_votes=len(answers),
        category_a=question.category_a or DEFAULT_CATEGORY_A,
        category_b=question.category_b or DEFAULT_CATEGORY_B,
        categories=categories,
    )


STATS_BUILDERS = {
    QuestionType.SINGLE_CHOICE: single_choice_stats,
    QuestionType.RANKED_ORDER: ranked_order_stats,
    QuestionType.PAIRED_ASSOCIATION: paired_association_stats,
    QuestionType.BINARY_CATEGORIZATION: categorization_stats,
}


def question_stats(question: QuestionRead, question_index: int, records: List[Record]) -> QuestionStats:
    builder = STATS_BUILDERS[QuestionType(question.type)]
    return builder(question, question_index, valid_answers(question, question_index, records))


def aggregate(questions: Sequence[QuestionRead], answer_maps: Mapping[str, Any]) -> List[QuestionStats]:
    """Statistics for every question, in sequence order."""
    records = readable_records(answer_maps)
    return [question_stats(question, index, records) for index, question in enumerate(questions)]


def stats_to_json(stats: Sequence[QuestionStats]) -> list:
    return _stats_adapter.dump_python(list(stats), mode="json")


def stats_from_json(payload: list) -> List[QuestionStats]:
    return _stats_adapter.validate_python(payload)
