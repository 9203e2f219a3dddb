"""
Answer parsing per question type
"""
import pytest

from conftest import make_question
from livesurvey.core.errors import InvalidAnswerShape
from livesurvey.models.survey import QuestionType
from livesurvey.services.answer_shapes import (
    CategorizationAnswer,
    PairedAssociationAnswer,
    RankedOrderAnswer,
    SingleChoiceAnswer,
    canonical_pair,
    parse_answer,
)


class TestSingleChoice:
    question = make_question(QuestionType.SINGLE_CHOICE, options=3)

    def test_valid_index(self):
        assert parse_answer(self.question, 2) == SingleChoiceAnswer(option=2)

    @pytest.mark.parametrize("raw", [3, -1, True, "1", 1.0, [0]])
    def test_rejects_non_index(self, raw):
        with pytest.raises(InvalidAnswerShape):
            parse_answer(self.question, raw)


class TestRankedOrder:
    question = make_question(QuestionType.RANKED_ORDER, options=3)

    def test_permutation_is_kept_in_order(self):
        answer = parse_answer(self.question, [2, 0, 1])
        assert answer == RankedOrderAnswer(order=(2, 0, 1))
        assert answer.position_of(2) == 0
        assert answer.to_json() == [2, 0, 1]

    @pytest.mark.parametrize(
        "raw",
        [
            [2, 0],  # too short
            [0, 1, 2, 0],  # too long
            [0, 0, 1],  # duplicate
            [0, 1, 3],  # out of range
            {"0": 1},
            None,
        ],
    )
    def test_rejects_non_permutations(self, raw):
        with pytest.raises(InvalidAnswerShape):
            parse_answer(self.question, raw)


class TestPairedAssociation:
    question = make_question(QuestionType.PAIRED_ASSOCIATION, options=4)

    def test_pairs_are_canonical(self):
        answer = parse_answer(self.question, [3, 1, 0, 2])
        assert answer == PairedAssociationAnswer(pairs=((1, 3), (0, 2)))
        assert answer.pair_keys() == {(1, 3), (0, 2)}

    def test_canonical_pair(self):
        assert canonical_pair(5, 2) == (2, 5)
        assert canonical_pair(2, 5) == (2, 5)

    @pytest.mark.parametrize("raw", [[], [0, 1, 2], [0, 0], [0, 4], "0,1"])
    def test_rejects_bad_pairs(self, raw):
        with pytest.raises(InvalidAnswerShape):
            parse_answer(self.question, raw)


class TestCategorization:
    question = make_question(QuestionType.BINARY_CATEGORIZATION, options=3)

    def test_string_keys_from_json(self):
        answer = parse_answer(self.question, {"2": 1, "0": 0})
        assert answer == CategorizationAnswer(placements=((0, 0), (2, 1)))
        assert answer.to_json() == {"0": 0, "2": 1}

    def test_sparse_map_is_allowed(self):
        assert parse_answer(self.question, {1: 1}).as_dict() == {1: 1}

    @pytest.mark.parametrize("raw", [{"0": 2}, {"5": 0}, {"0": True}, {"x": 0}, [0, 1], {0: 0, "0": 1}])
    def test_rejects_bad_maps(self, raw):
        with pytest.raises(InvalidAnswerShape):
            parse_answer(self.question, raw)
