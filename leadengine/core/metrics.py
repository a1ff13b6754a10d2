"""
Pipeline metrics

Prometheus counters and histograms shared by the lead engagement services.
"""
import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

MODERATION_STATUS_WRITES = Counter(
    'leadengine_moderation_transitions_total',
    'Moderation item status transitions written',
    ['status']
)

JUDGE_VERDICTS = Counter(
    'leadengine_judge_verdicts_total',
    'AI quality judge outcomes by policy',
    ['policy']
)

JUDGE_SCORES = Histogram(
    'leadengine_judge_scores',
    'Distribution of AI quality judge scores',
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
)

POSTING_ATTEMPTS = Counter(
    'leadengine_posting_attempts_total',
    'Remote comment posting attempts',
    ['outcome']
)

TOKEN_REFRESHES = Counter(
    'leadengine_token_refreshes_total',
    'Access token refresh attempts',
    ['outcome']
)

CONVERSATION_TURNS = Counter(
    'leadengine_conversation_turns_total',
    'Inbound conversation messages processed',
    ['outcome']
)

QUALIFICATION_EVENTS = Counter(
    'leadengine_qualification_events_total',
    'Lead qualification attempts',
    ['qualification_type', 'outcome']
)

SIDE_CHANNEL_FAILURES = Counter(
    'leadengine_side_channel_failures_total',
    'Best-effort side channel writes that failed without failing the primary operation',
    ['channel']
)


def record_side_channel_failure(channel: str, error: Exception) -> None:
    """Count and log a failed non-critical write"""
    SIDE_CHANNEL_FAILURES.labels(channel=channel).inc()
    logger.error(f"Side channel '{channel}' write failed: {error}")


def side_channel_failure_count(channel: str) -> float:
    """Current failure count for a side channel"""
    return SIDE_CHANNEL_FAILURES.labels(channel=channel)._value.get()
