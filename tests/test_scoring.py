import pytest

from engines.scoring import (
    SCORE_CEILING,
    SCORE_FLOOR,
    AnswerOutcome,
    PerformanceFactors,
    QualityInputs,
    calculate_ember_score,
    community_feedback_points,
    curriculum_alignment_points,
    expert_verification_points,
    format_score_breakdown,
    get_score_color,
    quality_tier,
    score_question_quality,
    time_rating_for,
    update_ember_score,
)


def test_perfect_performance_hits_ceiling():
    score = calculate_ember_score(PerformanceFactors(accuracy=1.0, speed=1.0, consistency=1.0))
    assert score == SCORE_CEILING


def test_zero_performance_stays_at_floor():
    score = calculate_ember_score(PerformanceFactors(accuracy=0.0, speed=0.0, consistency=0.0))
    assert score == SCORE_FLOOR


def test_out_of_range_factors_are_clamped():
    high = calculate_ember_score(PerformanceFactors(accuracy=3.0, speed=-2.0, consistency=9.0))
    same = calculate_ember_score(PerformanceFactors(accuracy=1.0, speed=0.0, consistency=1.0))
    assert high == same
    assert SCORE_FLOOR <= high <= SCORE_CEILING


def test_banded_weighting_for_mid_performance():
    # 60 + 40 * (0.5*0.6 + 0.3*0.6 + 0.2*0.7) = 84.8
    assert calculate_ember_score(PerformanceFactors(accuracy=0.6, speed=0.7, consistency=0.6)) == 85


def test_harder_tiers_score_higher():
    factors = dict(accuracy=0.7, speed=0.5, consistency=0.6)
    foundation = calculate_ember_score(PerformanceFactors(difficulty="foundation", **factors))
    standard = calculate_ember_score(PerformanceFactors(difficulty="standard", **factors))
    challenge = calculate_ember_score(PerformanceFactors(difficulty="challenge", **factors))
    assert foundation < standard < challenge


def test_streak_bonus_is_capped():
    base = PerformanceFactors(accuracy=0.5, speed=0.5, consistency=0.5)
    no_streak = calculate_ember_score(base)
    long_streak = calculate_ember_score(PerformanceFactors(accuracy=0.5, speed=0.5, consistency=0.5, streak=50))
    assert long_streak - no_streak == 5


def test_update_correct_fast_answer():
    assert update_ember_score(75, AnswerOutcome(correct=True, difficulty="standard", time_rating="fast")) == 79


def test_update_incorrect_slow_answer():
    assert update_ember_score(75, AnswerOutcome(correct=False, difficulty="standard", time_rating="slow")) == 73


@pytest.mark.parametrize("difficulty", ["foundation", "standard", "challenge"])
@pytest.mark.parametrize("rating", ["fast", "normal", "slow"])
def test_update_direction_and_delta_bounds(difficulty, rating):
    up = update_ember_score(80, AnswerOutcome(True, difficulty, rating))
    down = update_ember_score(80, AnswerOutcome(False, difficulty, rating))
    assert 1 <= up - 80 <= 5
    assert 1 <= 80 - down <= 5


def test_update_respects_bounds():
    assert update_ember_score(100, AnswerOutcome(correct=True, time_rating="fast")) == 100
    assert update_ember_score(60, AnswerOutcome(correct=False)) == 60
    assert update_ember_score(20, AnswerOutcome(correct=False)) == 60


def test_time_rating_thresholds():
    assert time_rating_for(None) == "normal"
    assert time_rating_for(10) == "fast"
    assert time_rating_for(30) == "normal"
    assert time_rating_for(90) == "normal"
    assert time_rating_for(91) == "slow"


def test_score_colors():
    assert get_score_color(85) == "green"
    assert get_score_color(80) == "green"
    assert get_score_color(72) == "yellow"
    assert get_score_color(65) == "orange"


def test_curriculum_alignment_points():
    assert curriculum_alignment_points("KS2 Maths: Fractions") == 40
    assert curriculum_alignment_points("Year 5 reading") == 40
    assert curriculum_alignment_points("11+ verbal reasoning") == 20
    assert curriculum_alignment_points("  ") == 0
    assert curriculum_alignment_points(None) == 0


def test_expert_verification_points():
    assert expert_verification_points("reviewed") == 40
    assert expert_verification_points("spot_checked") == 25
    assert expert_verification_points(None) == 10


def test_community_feedback_penalises_reports():
    clean = community_feedback_points(helpful_count=4, practice_count=1000, pending_reports=0)
    reported = community_feedback_points(helpful_count=4, practice_count=1000, pending_reports=2)
    assert clean == pytest.approx(16 + 2 + 1)
    assert reported == pytest.approx(16 - 4 + 2)
    assert community_feedback_points(0, 0, 20) == 0.0
    assert community_feedback_points(100, 10**6, 0) == 20.0


def test_question_quality_tiers():
    best = score_question_quality(
        QualityInputs(curriculum_reference="KS2", review_status="reviewed", helpful_count=8, practice_count=4000)
    )
    assert best.score == 100.0
    assert best.tier == "verified"

    fresh = score_question_quality(QualityInputs())
    assert fresh.score == pytest.approx(26.0)
    assert fresh.tier == "draft"
    assert set(fresh.to_dict()["breakdown"]) == {
        "curriculum_alignment",
        "expert_verification",
        "community_feedback",
    }
    assert quality_tier(75) == "confident"


def test_format_score_breakdown_percentages():
    rows = format_score_breakdown({"curriculum_alignment": 40, "expert_verification": 10, "community_feedback": 15})
    by_name = {row["component"]: row for row in rows}
    assert by_name["Curriculum Alignment"]["percentage"] == pytest.approx(100.0)
    assert by_name["Expert Verification"]["percentage"] == pytest.approx(25.0)
    assert by_name["Community Feedback"]["max_score"] == 20
