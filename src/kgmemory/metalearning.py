"""Meta-learning principles and their effectiveness metrics.

A principle is an entity typed ``meta_learning``. Its counters live in
``metadata.metrics`` and are mirrored into the observation list as
``KEY: value`` lines, which is also how records written by older
versions carry them. Everything here is a pure transformation; the
engine does the reading and writing.
"""

import json
import math
from datetime import datetime

from .constants import META_LEARNING_TYPE
from .errors import EntityNotFound, ValidationError
from .models import (
    Entity,
    EntityMetadata,
    KnowledgeGraph,
    MetaLearningRequest,
    Metrics,
    Outcome,
    utc_now,
)

METRIC_KEYS = (
    "TIMES_APPLIED",
    "TIMES_SUCCESSFUL",
    "TIMES_FAILED",
    "EFFECTIVENESS_SCORE",
    "LAST_APPLIED",
    "APPLICATION_LOG",
)

NEVER = "never"


def principle_name(learning_type: str, principle: str) -> str:
    return f"Meta-Learning [{learning_type.title()}]: {principle}"


def format_number(value: float) -> str:
    """Render 1.0 as ``1`` and 0.5 as ``0.5``."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return str(round(value, 4))


def _metric_key(line: str) -> str | None:
    for key in METRIC_KEYS:
        if line.startswith(f"{key}:"):
            return key
    return None


def encode_metrics(metrics: Metrics) -> list[str]:
    """Metrics as observation lines, in METRIC_KEYS order."""
    last_applied = metrics.last_applied.isoformat() if metrics.last_applied else NEVER
    return [
        f"TIMES_APPLIED: {format_number(metrics.times_applied)}",
        f"TIMES_SUCCESSFUL: {format_number(metrics.times_successful)}",
        f"TIMES_FAILED: {format_number(metrics.times_failed)}",
        f"EFFECTIVENESS_SCORE: {format_number(metrics.effectiveness_score)}",
        f"LAST_APPLIED: {last_applied}",
        f"APPLICATION_LOG: {json.dumps(metrics.application_log)}",
    ]


def _parse_number(raw: str | None) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


def _parse_log(raw: str | None) -> list[str]:
    try:
        log = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(log, list):
        return []
    return [str(item) for item in log]


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw or raw == NEVER:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def decode_metrics(observations: list[str]) -> Metrics:
    """Read the metrics block from observation lines.

    Never raises: malformed numbers read as 0, a malformed log as [].
    """
    raw: dict[str, str] = {}
    for line in observations:
        key = _metric_key(line)
        if key is not None:
            raw[key] = line[len(key) + 1:].strip()

    return Metrics(
        times_applied=_parse_number(raw.get("TIMES_APPLIED")),
        times_successful=_parse_number(raw.get("TIMES_SUCCESSFUL")),
        times_failed=_parse_number(raw.get("TIMES_FAILED")),
        effectiveness_score=min(1.0, max(0.0, _parse_number(raw.get("EFFECTIVENESS_SCORE")))),
        last_applied=_parse_timestamp(raw.get("LAST_APPLIED")),
        application_log=_parse_log(raw.get("APPLICATION_LOG")),
    )


def metrics_for(entity: Entity) -> Metrics:
    """Structured metrics if present, else decoded from the text block."""
    if entity.metadata is not None and entity.metadata.metrics is not None:
        return entity.metadata.metrics.model_copy(deep=True)
    return decode_metrics(entity.observations)


def apply_outcome(
    metrics: Metrics,
    outcome: Outcome,
    application_context: str,
    details: str | None = None,
    now: datetime | None = None,
) -> Metrics:
    """Return new metrics with one application recorded."""
    now = now or utc_now()
    updated = metrics.model_copy(deep=True)
    if outcome == "successful":
        updated.times_successful += 1
    elif outcome == "failed":
        updated.times_failed += 1
    elif outcome == "partially_successful":
        updated.times_successful += 0.5
        updated.times_failed += 0.5
    else:
        raise ValidationError(f"Unknown outcome: {outcome}")

    updated.times_applied += 1
    decided = updated.times_successful + updated.times_failed
    updated.effectiveness_score = updated.times_successful / decided if decided else 0.0
    updated.last_applied = now

    entry = f"{now.isoformat()} [{outcome}] {application_context}"
    if details:
        entry += f": {details}"
    updated.application_log.append(entry)
    return updated


def rewrite_observations(
    observations: list[str],
    metrics: Metrics,
    lessons_learned: str | None = None,
) -> list[str]:
    """Replace metric lines in place; keep every other line where it was.

    Keys absent from the old block are appended, then the lesson (if any).
    """
    encoded = dict(zip(METRIC_KEYS, encode_metrics(metrics)))
    seen = set()
    result = []
    for line in observations:
        key = _metric_key(line)
        if key is None:
            result.append(line)
        else:
            result.append(encoded[key])
            seen.add(key)
    result.extend(encoded[key] for key in METRIC_KEYS if key not in seen)
    if lessons_learned:
        result.append(f"Lesson learned: {lessons_learned}")
    return result


def build_principle(request: MetaLearningRequest) -> Entity:
    """Entity for a newly stored principle, with zeroed metrics."""
    described = [
        ("Trigger situation", request.trigger_situation),
        ("Observed behavior", request.observed_behavior),
        ("Recommended behavior", request.recommended_behavior),
        ("Specific example", request.specific_example),
        ("Prevention pattern", request.prevention_pattern),
        ("Success metric", request.success_metric),
        ("Project context", request.project_context),
    ]
    observations = [f"{label}: {value}" for label, value in described if value]
    observations.append(f"Impact: {request.impact}")
    observations.append("Scope: general" if request.is_general else "Scope: project-specific")

    metrics = Metrics()
    observations.extend(encode_metrics(metrics))

    return Entity(
        name=principle_name(request.learning_type, request.principle),
        entity_type=[META_LEARNING_TYPE, request.learning_type],
        observations=observations,
        metadata=EntityMetadata(
            domain=request.domain,
            tags=request.tags,
            content=request.principle,
            metrics=metrics,
        ),
    )


def resolve_principle(graph: KnowledgeGraph, name: str) -> Entity:
    """Find a principle by exact name, or by prefix when ``name`` ends in '...'."""
    entity = graph.get_entity(name)
    if entity is not None:
        return entity

    if name.endswith("..."):
        prefix = name[:-3].rstrip()
        matches = [
            e for e in graph.entities
            if META_LEARNING_TYPE in e.types and e.name.startswith(prefix)
        ]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ValidationError(
                f"Principle name '{name}' is ambiguous",
                {"candidates": [e.name for e in matches]},
            )
    raise EntityNotFound(name, f"Meta-learning principle not found: {name}")


def track_application(entity: Entity, outcome: Outcome, application_context: str,
                      details: str | None = None, lessons_learned: str | None = None,
                      now: datetime | None = None) -> tuple[Entity, Metrics]:
    """Record one application on a principle entity.

    Returns the updated entity (observations and metadata) and its metrics.
    """
    metrics = apply_outcome(metrics_for(entity), outcome, application_context, details, now)
    metadata = (entity.metadata or EntityMetadata()).model_copy(update={"metrics": metrics})
    updated = entity.model_copy(update={
        "observations": rewrite_observations(entity.observations, metrics, lessons_learned),
        "metadata": metadata,
    })
    return updated, metrics
