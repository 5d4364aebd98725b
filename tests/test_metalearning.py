"""Tests for meta-learning principles and metrics."""

import json
from datetime import datetime, timezone

import pytest

from kgmemory.errors import EntityNotFound, ValidationError
from kgmemory.metalearning import (
    apply_outcome,
    build_principle,
    decode_metrics,
    encode_metrics,
    format_number,
    metrics_for,
    principle_name,
    resolve_principle,
    rewrite_observations,
    track_application,
)
from kgmemory.models import Entity, KnowledgeGraph, MetaLearningRequest, Metrics

NOW = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)


def _request(**overrides) -> MetaLearningRequest:
    data = {
        "principle": "Read the error message before changing code",
        "learning_type": "failure",
        "trigger_situation": "A test fails",
        "recommended_behavior": "Read the full traceback first",
        "domain": "debugging",
        "tags": ["testing"],
    }
    data.update(overrides)
    return MetaLearningRequest(**data)


def test_principle_name():
    """Test the name prefix uses the title-cased learning type."""
    assert principle_name("failure", "X") == "Meta-Learning [Failure]: X"
    assert principle_name("optimization", "Y") == "Meta-Learning [Optimization]: Y"


def test_format_number():
    """Test whole numbers drop their decimal part."""
    assert format_number(1.0) == "1"
    assert format_number(0) == "0"
    assert format_number(0.5) == "0.5"
    assert format_number(2 / 3) == "0.6667"


def test_build_principle():
    """Test a new principle starts with zeroed metrics."""
    entity = build_principle(_request())

    assert entity.name.startswith("Meta-Learning [Failure]:")
    assert entity.types == ["meta_learning", "failure"]
    assert "Trigger situation: A test fails" in entity.observations
    assert "Impact: medium" in entity.observations
    assert "Scope: general" in entity.observations
    assert "TIMES_APPLIED: 0" in entity.observations
    assert "LAST_APPLIED: never" in entity.observations
    assert "APPLICATION_LOG: []" in entity.observations
    assert entity.metadata.domain == "debugging"
    assert entity.metadata.content == "Read the error message before changing code"
    assert entity.metadata.metrics.times_applied == 0


def test_build_principle_project_scope():
    """Test project-specific principles say so."""
    entity = build_principle(_request(is_general=False, project_context="billing service"))
    assert "Scope: project-specific" in entity.observations
    assert "Project context: billing service" in entity.observations


def test_encode_decode_metrics():
    """Test the text block carries every counter."""
    metrics = Metrics(
        times_applied=3, times_successful=2.5, times_failed=0.5,
        effectiveness_score=0.8333, last_applied=NOW, application_log=["entry"],
    )
    decoded = decode_metrics(["unrelated line", *encode_metrics(metrics)])

    assert decoded.times_applied == 3
    assert decoded.times_successful == 2.5
    assert decoded.effectiveness_score == pytest.approx(0.8333)
    assert decoded.last_applied == NOW
    assert decoded.application_log == ["entry"]


def test_decode_malformed_metrics():
    """Test malformed values decode as zero and never raise."""
    decoded = decode_metrics([
        "TIMES_APPLIED: lots",
        "TIMES_SUCCESSFUL: nan",
        "EFFECTIVENESS_SCORE: 7",
        "LAST_APPLIED: yesterday-ish",
        "APPLICATION_LOG: {not a list",
    ])
    assert decoded.times_applied == 0
    assert decoded.times_successful == 0
    assert decoded.times_failed == 0
    assert decoded.effectiveness_score == 1.0
    assert decoded.last_applied is None
    assert decoded.application_log == []


def test_apply_outcomes():
    """Test success, failure and partial credit."""
    metrics = apply_outcome(Metrics(), "successful", "ctx", now=NOW)
    assert metrics.times_applied == 1
    assert metrics.effectiveness_score == 1.0
    assert metrics.last_applied == NOW

    metrics = apply_outcome(metrics, "failed", "ctx", now=NOW)
    assert metrics.effectiveness_score == 0.5

    metrics = apply_outcome(metrics, "partially_successful", "ctx", "half done", now=NOW)
    assert metrics.times_applied == 3
    assert metrics.times_successful == 1.5
    assert metrics.times_failed == 1.5
    assert metrics.application_log[-1] == f"{NOW.isoformat()} [partially_successful] ctx: half done"


def test_apply_outcome_does_not_mutate():
    """Test the input metrics are left untouched."""
    original = Metrics()
    apply_outcome(original, "successful", "ctx")
    assert original.times_applied == 0
    assert original.application_log == []


def test_apply_unknown_outcome():
    """Test an unknown outcome is rejected."""
    with pytest.raises(ValidationError):
        apply_outcome(Metrics(), "maybe", "ctx")


def test_rewrite_in_place():
    """Test metric lines keep their positions and other lines are untouched."""
    observations = ["first", "TIMES_APPLIED: 0", "middle", "EFFECTIVENESS_SCORE: 0", "last"]
    metrics = apply_outcome(Metrics(), "successful", "ctx", now=NOW)

    result = rewrite_observations(observations, metrics, lessons_learned="Works well")

    assert result[:5] == ["first", "TIMES_APPLIED: 1", "middle", "EFFECTIVENESS_SCORE: 1", "last"]
    assert "TIMES_SUCCESSFUL: 1" in result
    assert f"LAST_APPLIED: {NOW.isoformat()}" in result
    assert result[-1] == "Lesson learned: Works well"


def test_track_application_scenario():
    """Test one successful application updates the stored text block."""
    entity = build_principle(_request())
    updated, metrics = track_application(entity, "successful", "fixing CI", now=NOW)

    assert "TIMES_APPLIED: 1" in updated.observations
    assert "EFFECTIVENESS_SCORE: 1" in updated.observations
    assert "TIMES_APPLIED: 0" not in updated.observations
    assert updated.metadata.metrics.times_applied == 1
    assert metrics.effectiveness_score == 1.0

    log_line = next(o for o in updated.observations if o.startswith("APPLICATION_LOG:"))
    assert json.loads(log_line.split(": ", 1)[1]) == [f"{NOW.isoformat()} [successful] fixing CI"]


def test_metrics_for_legacy_entity():
    """Test principles without structured metrics decode the text block."""
    entity = Entity(
        name="Meta-Learning [Insight]: old",
        entity_type=["meta_learning", "insight"],
        observations=["TIMES_APPLIED: 4", "TIMES_SUCCESSFUL: 3", "TIMES_FAILED: 1"],
    )
    assert metrics_for(entity).times_applied == 4


def test_resolve_principle():
    """Test exact and '...' prefix resolution."""
    first = build_principle(_request(principle="Always pin dependency versions"))
    second = build_principle(_request(principle="Always write a failing test first"))
    graph = KnowledgeGraph(entities=[first, second])

    assert resolve_principle(graph, first.name).name == first.name
    assert resolve_principle(graph, "Meta-Learning [Failure]: Always pin...").name == first.name

    with pytest.raises(ValidationError):
        resolve_principle(graph, "Meta-Learning [Failure]: Always...")
    with pytest.raises(EntityNotFound):
        resolve_principle(graph, "Meta-Learning [Failure]: Never...")
    with pytest.raises(EntityNotFound):
        resolve_principle(graph, "Meta-Learning [Failure]: Always pin")
