import pytest

from spermcasa.core.analysis import TrackResult
from spermcasa.core.classification import (
    WHO_2021,
    SampleMeasurements,
    WHOClassification,
    aggregate_results,
    aggregate_to_dict,
    classify_sample,
    generate_report,
    is_motile,
    is_progressive,
)
from spermcasa.core.config import AnalysisParameters

PARAMS = AnalysisParameters()


def _result(track_id=1, vap=0.0, str_=0.0, vcl=None, **kwargs):
    values = dict(
        track_id=track_id,
        vcl=vcl if vcl is not None else vap,
        vsl=vap * str_,
        vap=vap,
        alh=1.0,
        bcf=2.0,
        lin=str_,
        str=str_,
        wob=1.0,
        duration=1.0,
        point_count=10,
        quality_score=1.0,
    )
    values.update(kwargs)
    return TrackResult(**values)


def test_empty_population_is_unknown():
    aggregate = aggregate_results([], PARAMS)

    assert aggregate.track_count == 0
    assert aggregate.classification == WHOClassification.UNKNOWN
    assert aggregate.total_motility_pct == 0.0
    assert aggregate.progressive_motility_pct == 0.0
    assert aggregate.avg_vcl == aggregate.avg_alh == aggregate.avg_wob == 0.0


def test_motility_percentages():
    results = [
        _result(1, vap=40.0, str_=0.9),  # progressive
        _result(2, vap=40.0, str_=0.5),  # motile, not straight enough
        _result(3, vap=10.0, str_=0.95),  # motile, too slow to be progressive
        _result(4, vap=2.0, str_=0.99),  # immotile
    ]
    aggregate = aggregate_results(results, PARAMS)

    assert aggregate.track_count == 4
    assert aggregate.motile_count == 3
    assert aggregate.progressive_count == 1
    assert aggregate.total_motility_pct == pytest.approx(75.0)
    assert aggregate.progressive_motility_pct == pytest.approx(25.0)
    assert aggregate.non_progressive_motility_pct == pytest.approx(50.0)
    assert aggregate.immotile_pct == pytest.approx(25.0)
    assert aggregate.progressive_motility_pct <= aggregate.total_motility_pct
    assert aggregate.avg_vap == pytest.approx(23.0)


def test_thresholds_are_strict():
    at_motile = _result(vap=PARAMS.minimum_velocity_threshold)
    assert not is_motile(at_motile, PARAMS)

    at_progressive = _result(vap=PARAMS.minimum_progressive_velocity_threshold, str_=0.95)
    assert not is_progressive(at_progressive, PARAMS)

    at_straightness = _result(vap=50.0, str_=PARAMS.straightness_threshold)
    assert not is_progressive(at_straightness, PARAMS)
    assert is_progressive(_result(vap=50.0, str_=0.81), PARAMS)


def test_normal_sample():
    classification, failed = classify_sample(60.0, 40.0)

    assert classification == WHOClassification.NORMAL
    assert failed == []


def test_low_motility_is_asthenozoospermia():
    classification, failed = classify_sample(30.0, 20.0)

    assert classification == WHOClassification.ASTHENOZOOSPERMIA
    assert failed == ["total_motility", "progressive_motility"]


def test_count_takes_priority_over_motility():
    measurements = SampleMeasurements(concentration_m_per_ml=10.0, normal_morphology_pct=2.0)
    classification, failed = classify_sample(30.0, 20.0, measurements)

    assert classification == WHOClassification.OLIGOZOOSPERMIA
    assert failed == [
        "concentration",
        "total_motility",
        "progressive_motility",
        "normal_morphology",
    ]


def test_morphology_and_other_abnormalities():
    classification, _ = classify_sample(
        60.0, 40.0, SampleMeasurements(normal_morphology_pct=3.0, volume_ml=1.0)
    )
    assert classification == WHOClassification.TERATOZOOSPERMIA

    classification, failed = classify_sample(
        60.0, 40.0, SampleMeasurements(volume_ml=1.0, vitality_pct=60.0)
    )
    assert classification == WHOClassification.OTHER_ABNORMALITY
    assert failed == ["volume"]


def test_limits_are_inclusive_lower_bounds():
    measurements = SampleMeasurements(
        concentration_m_per_ml=WHO_2021.concentration_m_per_ml,
        total_count_m=WHO_2021.total_count_m,
        volume_ml=WHO_2021.volume_ml,
        normal_morphology_pct=WHO_2021.normal_morphology_pct,
        vitality_pct=WHO_2021.vitality_pct,
    )
    classification, failed = classify_sample(
        WHO_2021.total_motility_pct, WHO_2021.progressive_motility_pct, measurements
    )

    assert classification == WHOClassification.NORMAL
    assert failed == []


def test_aggregate_carries_measurements_and_failed_criteria():
    results = [_result(i, vap=40.0, str_=0.9) for i in range(1, 5)]
    aggregate = aggregate_results(
        results, PARAMS, SampleMeasurements(total_count_m=20.0)
    )

    assert aggregate.classification == WHOClassification.OLIGOZOOSPERMIA
    assert aggregate.failed_criteria == ("total_count",)

    summary = aggregate_to_dict(aggregate)
    assert summary["classification"] == "Oligozoospermia"
    assert summary["failed_criteria"] == ["total_count"]
    assert summary["track_count"] == 4


def test_report(calibration):
    aggregate = aggregate_results([_result(vap=40.0, str_=0.9)], PARAMS)
    report = generate_report(aggregate, calibration, PARAMS)

    assert "SPERM MOTILITY ANALYSIS REPORT" in report
    assert "Classification:         Normal" in report
    assert "100.00%" in report

    empty = generate_report(aggregate_results([], PARAMS), calibration, PARAMS)
    assert "No valid tracks" in empty


def test_motility_percentages_sum_to_100_with_loose_thresholds():
    # Progressive tracks need not be motile when the thresholds are inverted
    params = AnalysisParameters(
        minimum_velocity_threshold=30.0,
        minimum_progressive_velocity_threshold=10.0,
    )
    results = [
        _result(1, vap=20.0, str_=0.9),  # progressive only
        _result(2, vap=20.0, str_=0.9),  # progressive only
        _result(3, vap=40.0, str_=0.1),  # motile only
        _result(4, vap=1.0, str_=0.0),  # neither
    ]
    aggregate = aggregate_results(results, params)

    assert aggregate.total_motility_pct == pytest.approx(25.0)
    assert aggregate.progressive_motility_pct == pytest.approx(50.0)
    assert aggregate.non_progressive_motility_pct == pytest.approx(-25.0)
    total = (
        aggregate.progressive_motility_pct
        + aggregate.non_progressive_motility_pct
        + aggregate.immotile_pct
    )
    assert total == pytest.approx(100.0)
