"""
Learning and feedback loop for AI responses.

Interactions are persisted as learning records and folded into an in-process
`MetricsAggregator`. Human feedback is attached later; negative feedback
produces a failure analysis. Pattern analysis and optimization only report,
they never change tenant configuration.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import deskmem.config as config
from deskmem.clock import Clock, default_clock, to_naive_utc
from deskmem.config import logger
from deskmem.errors import NotFoundError, ValidationIssue
from deskmem.models import FailureAnalysis, LearningRecord, Tenant
from deskmem.services.shared import get_tenant_or_raise, resolve_session_factory
from deskmem.validators import validate_confidence, validate_feedback, validate_limit

NEGATIVE_FEEDBACK_CATEGORIES = {"poor", "wrong"}
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

CAUSE_LOW_CONFIDENCE = "Low confidence in message analysis"
CAUSE_NO_CUSTOM_PROMPT = "No custom prompt configured for company"
CAUSE_NO_HISTORY = "No conversation history available"
CAUSE_WRONG_INTENT = "Incorrect understanding of user intent"

ACTION_FOR_CAUSE = {
    CAUSE_LOW_CONFIDENCE: "Review and improve message categorization prompts",
    CAUSE_NO_CUSTOM_PROMPT: "Configure custom prompt for better context",
    CAUSE_NO_HISTORY: "Collect more conversation history before auto-responding",
    CAUSE_WRONG_INTENT: "Add this scenario to training examples",
}


def is_negative_feedback(feedback: dict) -> bool:
    rating = feedback.get("rating")
    return (rating is not None and rating <= 2) or feedback.get("category") in NEGATIVE_FEEDBACK_CATEGORIES


class MetricsAggregator:
    """Rolling in-process aggregates; rebuilt from the store with `reconcile`."""

    def __init__(self, latency_window: Optional[int] = None):
        self._lock = threading.Lock()
        self._latency_window = latency_window or config.LEARNING_LATENCY_WINDOW
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.interactions = 0
            self.successful_responses = 0
            self.average_confidence = 0.0
            self.topic_counts: Counter = Counter()
            self.latencies: deque = deque(maxlen=self._latency_window)

    def record(self, analysis: dict, response: dict, processing_ms: Optional[float]) -> None:
        with self._lock:
            self.interactions += 1
            if response.get("generated"):
                self.successful_responses += 1
            confidence = float(analysis.get("confidence") or 0.0)
            self.average_confidence += (confidence - self.average_confidence) / self.interactions
            self.topic_counts.update(analysis.get("topics") or [])
            if processing_ms is not None:
                self.latencies.append(float(processing_ms))

    def snapshot(self, top_topics: Optional[int] = None) -> dict:
        top_topics = top_topics or config.LEARNING_TOP_TOPICS
        with self._lock:
            latencies = list(self.latencies)
            return {
                "interactions": self.interactions,
                "successful_responses": self.successful_responses,
                "average_confidence": round(self.average_confidence, 4),
                "common_topics": [
                    {"topic": topic, "count": count} for topic, count in self.topic_counts.most_common(top_topics)
                ],
                "latency_samples": len(latencies),
                "average_latency_ms": round(sum(latencies) / len(latencies), 2) if latencies else None,
            }

    def reconcile(self, session_factory: Callable, since: Optional[datetime] = None, tenant_id: Optional[str] = None) -> int:
        """Rebuild aggregates from persisted learning records; returns records read."""
        db = session_factory()
        try:
            query = db.query(LearningRecord)
            if since is not None:
                query = query.filter(LearningRecord.created_at >= since)
            if tenant_id is not None:
                query = query.filter(LearningRecord.tenant_id == tenant_id)
            rows = query.order_by(LearningRecord.created_at.asc(), LearningRecord.id.asc()).all()
        finally:
            db.close()
        self.reset()
        for row in rows:
            self.record(row.analysis or {}, row.response or {}, row.processing_ms)
        return len(rows)


def _section(record: dict, key: str) -> dict:
    value = record.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationIssue(f"{key} must be an object", field=key, error_type="invalid_type")
    return value


def _count(context: dict, key: str) -> int:
    value = context.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationIssue(
            f"context.{key} must be a non-negative integer",
            field=f"context.{key}",
            error_type="invalid_type",
        )
    return value


def _optional_str(section: dict, key: str, field: str) -> Optional[str]:
    value = section.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    return value


def _normalize_record(record: dict) -> dict:
    if not isinstance(record, dict):
        raise ValidationIssue("record must be an object", field="record", error_type="invalid_type")

    raw_input = _section(record, "input")
    context = _section(record, "context")
    analysis = _section(record, "analysis")
    response = _section(record, "response")
    content = _optional_str(raw_input, "content", "input.content") or ""

    confidence = analysis.get("confidence", 0.0)
    validate_confidence(confidence, "analysis.confidence")
    topics = analysis.get("topics") or []
    if not isinstance(topics, list) or not all(isinstance(topic, str) for topic in topics):
        raise ValidationIssue("analysis.topics must be a list of strings", field="analysis.topics", error_type="invalid_type")

    if response:
        response_content = _optional_str(response, "content", "response.content") or ""
        response_confidence = response.get("confidence")
        if response_confidence is not None:
            validate_confidence(response_confidence, "response.confidence")
        stored_response = {
            "generated": True,
            "confidence": response_confidence,
            "length": len(response_content),
            "type": _optional_str(response, "type", "response.type") or "text",
        }
    else:
        stored_response = {"generated": False, "reason": "low_confidence_or_human_required"}

    processing_ms = record.get("processing_ms")
    if processing_ms is not None and (isinstance(processing_ms, bool) or not isinstance(processing_ms, (int, float))):
        raise ValidationIssue("processing_ms must be a number", field="processing_ms", error_type="invalid_type")

    return {
        # message text stays in the conversation store; only its shape is kept here
        "input": {"source": _optional_str(raw_input, "source", "input.source"), "length": len(content)},
        "context": {
            "has_profile": bool(context.get("has_profile")),
            "recent_conversations": _count(context, "recent_conversations"),
            "historical_summaries": _count(context, "historical_summaries"),
            "tenant_custom_prompt": bool(context.get("tenant_custom_prompt")),
        },
        "analysis": {
            "category": _optional_str(analysis, "category", "analysis.category") or "general",
            "confidence": float(confidence),
            "sentiment": _optional_str(analysis, "sentiment", "analysis.sentiment") or "neutral",
            "urgency": _optional_str(analysis, "urgency", "analysis.urgency") or "normal",
            "topics": topics,
        },
        "response": stored_response,
        "processing_ms": processing_ms,
    }


def identify_possible_causes(record: LearningRecord, feedback: dict) -> list[str]:
    analysis = record.analysis or {}
    context = record.context or {}
    causes = []
    if float(analysis.get("confidence") or 0.0) < config.FAILURE_CONFIDENCE_THRESHOLD:
        causes.append(CAUSE_LOW_CONFIDENCE)
    if not context.get("tenant_custom_prompt"):
        causes.append(CAUSE_NO_CUSTOM_PROMPT)
    if not context.get("recent_conversations"):
        causes.append(CAUSE_NO_HISTORY)
    if feedback.get("category") == "wrong":
        causes.append(CAUSE_WRONG_INTENT)
    return causes


def _response_rate(records: list[LearningRecord]) -> float:
    if not records:
        return 0.0
    responded = sum(1 for record in records if (record.response or {}).get("generated"))
    return responded / len(records)


def _average_confidence(records: list[LearningRecord]) -> float:
    if not records:
        return 0.0
    return sum(float((record.analysis or {}).get("confidence") or 0.0) for record in records) / len(records)


def _top_topics(records: list[LearningRecord], limit: int) -> list[dict]:
    counts: Counter = Counter()
    for record in records:
        counts.update((record.analysis or {}).get("topics") or [])
    return [{"topic": topic, "count": count} for topic, count in counts.most_common(limit)]


def _sentiment_distribution(records: list[LearningRecord]) -> dict:
    distribution = {"positive": 0, "neutral": 0, "negative": 0}
    for record in records:
        sentiment = (record.analysis or {}).get("sentiment")
        if sentiment in distribution:
            distribution[sentiment] += 1
    return distribution


def _category_performance(records: list[LearningRecord]) -> dict:
    categories: dict = {}
    for record in records:
        analysis = record.analysis or {}
        stats = categories.setdefault(
            analysis.get("category") or "general",
            {"total": 0, "responded": 0, "confidence_sum": 0.0, "positive_feedback": 0},
        )
        stats["total"] += 1
        if (record.response or {}).get("generated"):
            stats["responded"] += 1
        stats["confidence_sum"] += float(analysis.get("confidence") or 0.0)
        rating = (record.feedback or {}).get("rating")
        if rating is not None and rating >= 4:
            stats["positive_feedback"] += 1

    performance = {}
    for category, stats in categories.items():
        total = stats["total"]
        performance[category] = {
            "total": total,
            "responded": stats["responded"],
            "response_rate": stats["responded"] / total,
            "avg_confidence": stats["confidence_sum"] / total,
            "satisfaction_rate": stats["positive_feedback"] / total,
        }
    return performance


def improvement_suggestions(records: list[LearningRecord]) -> list[dict]:
    suggestions = []
    total = len(records)
    if not total:
        return suggestions

    low_confidence = sum(
        1
        for record in records
        if float((record.analysis or {}).get("confidence") or 0.0) < config.LOW_CONFIDENCE_THRESHOLD
    )
    if low_confidence > total * config.LOW_CONFIDENCE_RATIO:
        suggestions.append({
            "type": "confidence",
            "issue": f"{low_confidence} of {total} interactions had low analysis confidence",
            "suggestion": "Improve the tenant's custom prompt or add more customer context",
            "priority": "high",
        })

    negative = sum(
        1
        for record in records
        if record.feedback and record.feedback.get("rating") is not None and record.feedback["rating"] <= 2
    )
    if negative:
        suggestions.append({
            "type": "feedback",
            "issue": f"{negative} negative feedback ratings",
            "suggestion": "Review responses that received negative feedback to find recurring patterns",
            "priority": "high",
        })

    takeovers = sum(1 for record in records if record.feedback and record.feedback.get("human_took_over"))
    if takeovers > total * config.HUMAN_TAKEOVER_RATIO:
        suggestions.append({
            "type": "coverage",
            "issue": f"{takeovers} conversations handed over to a human",
            "suggestion": "Expand the agent's knowledge or improve categorization",
            "priority": "medium",
        })

    suggestions.sort(key=lambda item: PRIORITY_ORDER[item["priority"]])
    return suggestions


class LearningEngine:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        clock: Optional[Clock] = None,
        aggregator: Optional[MetricsAggregator] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or default_clock
        self.aggregator = aggregator or MetricsAggregator()

    def _session(self):
        return resolve_session_factory(self._session_factory)()

    def _now(self) -> datetime:
        return to_naive_utc(self.clock.now())

    def record_interaction(self, tenant_id: str, customer_id: str, record: dict) -> Optional[int]:
        """
        Persist one AI interaction. Never raises: failures are logged and
        return None so the response path is unaffected.
        """
        try:
            normalized = _normalize_record(record)
        except ValidationIssue as exc:
            logger.warning(
                "Learning record rejected",
                extra={"tenant_id": tenant_id, "field": exc.field, "error_type": exc.error_type},
            )
            return None

        self.aggregator.record(normalized["analysis"], normalized["response"], normalized["processing_ms"])

        try:
            db = self._session()
        except Exception as exc:
            logger.warning("Learning store unavailable", extra={"tenant_id": tenant_id, "error_type": type(exc).__name__})
            return None
        try:
            entry = LearningRecord(
                tenant_id=tenant_id,
                customer_id=customer_id,
                input=normalized["input"],
                context=normalized["context"],
                analysis=normalized["analysis"],
                response=normalized["response"],
                processing_ms=normalized["processing_ms"],
                created_at=self._now(),
            )
            db.add(entry)
            db.commit()
            return entry.id
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(
                "Learning record not persisted",
                extra={"tenant_id": tenant_id, "customer_id": customer_id, "error_type": type(exc).__name__},
            )
            return None
        finally:
            db.close()

    def _write_failure_analysis(self, db, record: LearningRecord, feedback: dict) -> FailureAnalysis:
        causes = identify_possible_causes(record, feedback)
        actions = [ACTION_FOR_CAUSE[cause] for cause in causes]
        analysis = record.analysis or {}
        values = {
            "issue": {
                "category": feedback.get("category"),
                "rating": feedback.get("rating"),
                "comment": feedback.get("user_comment"),
            },
            "context": {
                "input_category": analysis.get("category"),
                "confidence": analysis.get("confidence"),
                "topics": analysis.get("topics") or [],
                "has_custom_prompt": bool((record.context or {}).get("tenant_custom_prompt")),
            },
            "possible_causes": causes,
            "suggested_actions": actions,
        }
        # one row per negative feedback event; earlier analyses are kept
        failure = FailureAnalysis(
            learning_record_id=record.id,
            tenant_id=record.tenant_id,
            customer_id=record.customer_id,
            created_at=self._now(),
            **values,
        )
        db.add(failure)
        return failure

    def analyze_failure(self, record_id: int, feedback: dict) -> int:
        validate_feedback(feedback)
        db = self._session()
        try:
            record = db.get(LearningRecord, record_id)
            if record is None:
                raise NotFoundError("learning_record", record_id)
            failure = self._write_failure_analysis(db, record, feedback)
            db.commit()
            return failure.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_feedback(self, record_id: int, feedback: dict) -> Optional[int]:
        """
        Attach feedback to a learning record. Returns the failure analysis id
        when the feedback is negative, otherwise None.
        """
        validate_feedback(feedback)
        db = self._session()
        try:
            record = db.get(LearningRecord, record_id)
            if record is None:
                raise NotFoundError("learning_record", record_id)
            now = self._now()
            record.feedback = {
                "rating": feedback.get("rating"),
                "was_helpful": feedback.get("was_helpful"),
                "category": feedback.get("category"),
                "human_took_over": bool(feedback.get("human_took_over")),
                "user_comment": feedback.get("user_comment"),
                "recorded_at": now.isoformat(),
            }
            record.feedback_at = now

            failure_id = None
            if is_negative_feedback(feedback):
                failure = self._write_failure_analysis(db, record, feedback)
                db.flush()
                failure_id = failure.id
            db.commit()
            logger.info(
                "Feedback recorded",
                extra={
                    "learning_record_id": record_id,
                    "rating": feedback.get("rating"),
                    "negative": failure_id is not None,
                },
            )
            return failure_id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _records_since(self, db, tenant_id: Optional[str], since: datetime) -> list[LearningRecord]:
        query = db.query(LearningRecord).filter(LearningRecord.created_at >= since)
        if tenant_id is not None:
            query = query.filter(LearningRecord.tenant_id == tenant_id)
        return query.all()

    def analyze_patterns(self, tenant_id: Optional[str], window_days: Optional[int] = None) -> dict:
        window_days = window_days or config.LEARNING_PATTERN_WINDOW_DAYS
        validate_limit(window_days, "window_days", 3650)
        db = self._session()
        try:
            if tenant_id is not None:
                get_tenant_or_raise(db, tenant_id)
            records = self._records_since(db, tenant_id, self._now() - timedelta(days=window_days))
            return {
                "tenant_id": tenant_id,
                "window_days": window_days,
                "total_interactions": len(records),
                "response_rate": _response_rate(records),
                "average_confidence": _average_confidence(records),
                "top_topics": _top_topics(records, config.LEARNING_TOP_TOPICS),
                "sentiment_distribution": _sentiment_distribution(records),
                "category_performance": _category_performance(records),
                "improvement_suggestions": improvement_suggestions(records),
            }
        finally:
            db.close()

    def optimize(self, tenant_id: str) -> dict:
        """Recommendations from the last 30 days; nothing is applied."""
        patterns = self.analyze_patterns(tenant_id, config.LEARNING_OPTIMIZE_WINDOW_DAYS)
        db = self._session()
        try:
            tenant = db.get(Tenant, tenant_id)
            custom_prompt = (tenant.custom_prompt or "") if tenant else ""
        finally:
            db.close()

        optimizations = []
        if patterns["top_topics"]:
            prompt_lower = custom_prompt.lower()
            missing = [item["topic"] for item in patterns["top_topics"] if item["topic"].lower() not in prompt_lower]
            optimizations.append({
                "type": "prompt",
                "topics_missing_from_prompt": missing,
                "recommendation": (
                    "Cover these frequent topics in the custom prompt: " + ", ".join(missing)
                    if missing
                    else "Custom prompt already mentions the most frequent topics"
                ),
            })
        if patterns["total_interactions"] and patterns["average_confidence"] < config.FAILURE_CONFIDENCE_THRESHOLD:
            optimizations.append({
                "type": "confidence_threshold",
                "recommendation": f"Lower the confidence threshold to {config.FAILURE_CONFIDENCE_THRESHOLD}",
                "reasoning": "Average confidence is well below the current threshold",
            })
        return {
            "tenant_id": tenant_id,
            "optimizations": optimizations,
            "current_performance": patterns,
            "generated_at": self._now().isoformat(),
        }

    def agent_stats(self, tenant_id: Optional[str] = None, hours: int = 24) -> dict:
        validate_limit(hours, "hours", 24 * 365)
        db = self._session()
        try:
            records = self._records_since(db, tenant_id, self._now() - timedelta(hours=hours))
        finally:
            db.close()
        return {
            "tenant_id": tenant_id,
            "hours": hours,
            "total_interactions": len(records),
            "response_rate": _response_rate(records),
            "average_confidence": _average_confidence(records),
            "in_memory": self.aggregator.snapshot(),
            "generated_at": self._now().isoformat(),
        }

    def reconcile_metrics(self, hours: Optional[int] = None) -> int:
        """Rebuild the in-memory aggregates from the last `hours` of persisted records."""
        hours = config.LEARNING_RECONCILE_WINDOW_HOURS if hours is None else hours
        validate_limit(hours, "hours", 24 * 365)
        since = self._now() - timedelta(hours=hours)
        count = self.aggregator.reconcile(resolve_session_factory(self._session_factory), since=since)
        logger.info("Learning metrics reconciled", extra={"records": count, "window_hours": hours})
        return count
