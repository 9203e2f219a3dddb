"""Answer shapes per question type.

Every stored answer is parsed into exactly one of four variants. The same
parser guards the write path (a bad shape is rejected before it is stored)
and the aggregation path (a bad stored shape is skipped).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from livesurvey.core.errors import InvalidAnswerShape
from livesurvey.models.survey import QuestionType
from livesurvey.schemas.admin import QuestionRead


@dataclass(frozen=True, slots=True)
class SingleChoiceAnswer:
    option: int

    def to_json(self) -> int:
        return self.option


@dataclass(frozen=True, slots=True)
class RankedOrderAnswer:
    """Option indices from most to least preferred."""

    order: tuple[int, ...]

    def position_of(self, option: int) -> int:
        return self.order.index(option)

    def to_json(self) -> list[int]:
        return list(self.order)


@dataclass(frozen=True, slots=True)
class PairedAssociationAnswer:
    """Pairs kept in submitted order, each normalized to (smaller, larger)."""

    pairs: tuple[tuple[int, int], ...]

    def pair_keys(self) -> set[tuple[int, int]]:
        return set(self.pairs)

    def to_json(self) -> list[int]:
        return [index for pair in self.pairs for index in pair]


@dataclass(frozen=True, slots=True)
class CategorizationAnswer:
    """Sparse (option index, category) placements sorted by option index; 0 = A, 1 = B."""

    placements: tuple[tuple[int, int], ...]

    def as_dict(self) -> dict[int, int]:
        return dict(self.placements)

    def to_json(self) -> dict[str, int]:
        return {str(option): category for option, category in self.placements}


Answer = Union[SingleChoiceAnswer, RankedOrderAnswer, PairedAssociationAnswer, CategorizationAnswer]


def canonical_pair(first: int, second: int) -> tuple[int, int]:
    return (first, second) if first < second else (second, first)


def _is_index(value: Any, size: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < size


def _single_choice(raw: Any, size: int) -> SingleChoiceAnswer:
    if not _is_index(raw, size):
        raise InvalidAnswerShape(f"expected an option index in [0, {size})")
    return SingleChoiceAnswer(option=raw)


def _ranked_order(raw: Any, size: int) -> RankedOrderAnswer:
    if not isinstance(raw, (list, tuple)):
        raise InvalidAnswerShape("ranking must be a list of option indices")
    if len(raw) != size:
        raise InvalidAnswerShape(f"ranking must list all {size} options")
    if not all(_is_index(value, size) for value in raw):
        raise InvalidAnswerShape("ranking contains an unknown option")
    if len(set(raw)) != size:
        raise InvalidAnswerShape("ranking lists an option twice")
    return RankedOrderAnswer(order=tuple(raw))


def _paired_association(raw: Any, size: int) -> PairedAssociationAnswer:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise InvalidAnswerShape("pairing must be a non-empty list of option indices")
    if len(raw) % 2:
        raise InvalidAnswerShape("pairing must contain an even number of indices")
    if not all(_is_index(value, size) for value in raw):
        raise InvalidAnswerShape("pairing contains an unknown option")
    if len(set(raw)) != len(raw):
        raise InvalidAnswerShape("an option can only belong to one pair")
    pairs = tuple(canonical_pair(raw[i], raw[i + 1]) for i in range(0, len(raw), 2))
    return PairedAssociationAnswer(pairs=pairs)


def _option_key(key: Any, size: int) -> int:
    # JSON object keys arrive as strings
    if isinstance(key, str) and key.isdigit():
        key = int(key)
    if not _is_index(key, size):
        raise InvalidAnswerShape("categorization refers to an unknown option")
    return key


def _categorization(raw: Any, size: int) -> CategorizationAnswer:
    if not isinstance(raw, dict):
        raise InvalidAnswerShape("categorization must map option indices to 0 or 1")
    placements = {}
    for key, category in raw.items():
        option = _option_key(key, size)
        if not _is_index(category, 2):
            raise InvalidAnswerShape("category must be 0 (A) or 1 (B)")
        if option in placements:
            raise InvalidAnswerShape("an option is categorized twice")
        placements[option] = category
    return CategorizationAnswer(placements=tuple(sorted(placements.items())))


def parse_answer(question: QuestionRead, raw: Any) -> Answer:
    """Parse ``raw`` against the question type or raise ``InvalidAnswerShape``."""
    size = len(question.options)
    kind = QuestionType(question.type)
    if kind is QuestionType.SINGLE_CHOICE:
        return _single_choice(raw, size)
    if kind is QuestionType.RANKED_ORDER:
        return _ranked_order(raw, size)
    if kind is QuestionType.PAIRED_ASSOCIATION:
        return _paired_association(raw, size)
    if kind is QuestionType.BINARY_CATEGORIZATION:
        return _categorization(raw, size)
    raise InvalidAnswerShape(f"unsupported question type {question.type!r}")
