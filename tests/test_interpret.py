from __future__ import annotations

import pytest

from digitsnap.config import PipelineConfig
from digitsnap.interpret import (
    NO_PREDICTION_LABEL,
    NOT_A_DIGIT_LABEL,
    InterpretPolicy,
    argmax_first,
    interpret_scores,
)

_POLICY = InterpretPolicy()


def test_tie_breaks_to_lowest_index() -> None:
    scores = [0.5, 0.5, 0, 0, 0, 0, 0, 0, 0, 0]
    pred = interpret_scores(scores, _POLICY)
    assert pred.status == "digit"
    assert pred.digit == 0
    assert pred.confidence_percent == pytest.approx(50.0)
    assert pred.label == "Predicted digit: 0"
    assert pred.confidence_text == "Confidence: 50.00%"


@pytest.mark.parametrize("index", list(range(10)))
def test_low_confidence_rejected_at_any_index(index: int) -> None:
    scores = [0.05] * 10
    scores[index] = 0.15
    pred = interpret_scores(scores, _POLICY)
    assert pred.status == "not_a_digit"
    assert pred.digit is None
    assert pred.confidence_percent is None
    assert pred.label == NOT_A_DIGIT_LABEL
    assert pred.confidence_text == ""


def test_exact_threshold_is_not_rejected() -> None:
    scores = [0.1] * 10
    scores[7] = 0.20
    pred = interpret_scores(scores, _POLICY)
    assert pred.status == "digit"
    assert pred.digit == 7
    assert pred.confidence_text == "Confidence: 20.00%"


def test_empty_vector_means_no_prediction() -> None:
    pred = interpret_scores([], _POLICY)
    assert pred.status == "no_prediction"
    assert pred.label == NO_PREDICTION_LABEL
    assert pred.digit is None and pred.confidence_text == ""


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_vector_means_no_prediction(bad: float) -> None:
    pred = interpret_scores([bad] + [0.0] * 9, _POLICY)
    assert pred.status == "no_prediction"
    assert pred.label == NO_PREDICTION_LABEL
    assert pred.confidence_percent is None and pred.confidence_text == ""


def test_pure_function_of_scores() -> None:
    scores = (0.01, 0.02, 0.03, 0.84, 0.02, 0.02, 0.02, 0.02, 0.01, 0.01)
    assert interpret_scores(scores, _POLICY) == interpret_scores(scores, _POLICY)


def test_unnormalized_scores_are_not_rescaled() -> None:
    scores = [0.0, 0.0, 3.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    pred = interpret_scores(scores, _POLICY)
    assert pred.digit == 2
    assert pred.confidence_percent == pytest.approx(300.0)


def test_policy_is_injectable() -> None:
    strict = InterpretPolicy(reject_below_percent=60.0, decimals=1)
    scores = [0.0] * 10
    scores[4] = 0.55
    assert interpret_scores(scores, strict).status == "not_a_digit"
    scores[4] = 0.6543
    pred = interpret_scores(scores, strict)
    assert pred.confidence_text == "Confidence: 65.4%"


def test_policy_from_config() -> None:
    cfg = PipelineConfig(reject_below_percent=35.5, confidence_decimals=3)
    pol = InterpretPolicy.from_config(cfg)
    assert pol.reject_below_percent == 35.5 and pol.decimals == 3


def test_argmax_first_empty_raises() -> None:
    with pytest.raises(ValueError):
        argmax_first([])
    assert argmax_first([1.0, 3.0, 3.0, 2.0]) == 1
