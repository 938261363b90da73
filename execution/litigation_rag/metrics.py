"""
Metrics Collection for the Litigation RAG pipeline

Tracks chat turns, retrieval health and upstream failures. One collector
is created per application and passed to the components that report.
"""

import logging
from dataclasses import dataclass, field
from collections import defaultdict
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class PipelineMetrics:
    """Aggregated pipeline metrics."""
    # Chat turns
    total_turns: int = 0
    grounded_turns: int = 0
    failed_turns: int = 0
    turns_by_mode: dict = field(default_factory=lambda: defaultdict(int))

    # Retrieval
    retrievals: int = 0
    degraded_retrievals: int = 0
    sources_returned: int = 0
    retrieval_latencies: list = field(default_factory=list)

    # Upstream failures by error type
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_retrieval_ms(self) -> float:
        if not self.retrieval_latencies:
            return 0
        return sum(self.retrieval_latencies) / len(self.retrieval_latencies)

    @property
    def p95_retrieval_ms(self) -> float:
        """95th percentile retrieval latency."""
        if not self.retrieval_latencies:
            return 0
        sorted_latencies = sorted(self.retrieval_latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def degraded_rate(self) -> float:
        """Share of retrievals that fell back to no sources."""
        if self.retrievals == 0:
            return 0
        return self.degraded_retrievals / self.retrievals

    @property
    def avg_sources_per_retrieval(self) -> float:
        ok = self.retrievals - self.degraded_retrievals
        if ok <= 0:
            return 0
        return self.sources_returned / ok

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "turns": {
                "total": self.total_turns,
                "grounded": self.grounded_turns,
                "failed": self.failed_turns,
                "by_mode": dict(self.turns_by_mode),
            },
            "retrieval": {
                "total": self.retrievals,
                "degraded": self.degraded_retrievals,
                "degraded_rate": f"{self.degraded_rate:.2%}",
                "avg_sources": round(self.avg_sources_per_retrieval, 2),
                "avg_ms": round(self.avg_retrieval_ms, 2),
                "p95_ms": round(self.p95_retrieval_ms, 2),
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates pipeline metrics.

    Usage:
        collector = MetricsCollector()
        retriever = SemanticRetriever(embeddings, store, metrics=collector)
        pipeline = RAGChatPipeline(retriever, completion, metrics=collector)

        collector.get_metrics_dict()
    """

    def __init__(self, max_history: int = 1000):
        self.metrics = PipelineMetrics()
        self._max_history = max_history
        self._start_time = datetime.now()

    def reset(self):
        """Reset all metrics (for testing)."""
        self.metrics = PipelineMetrics()
        self._start_time = datetime.now()

    def record_retrieval(self, sources: int, latency_ms: float, degraded: bool = False):
        """Record one retrieval attempt."""
        self.metrics.retrievals += 1
        if degraded:
            self.metrics.degraded_retrievals += 1
        else:
            self.metrics.sources_returned += sources

        self.metrics.retrieval_latencies.append(latency_ms)
        if len(self.metrics.retrieval_latencies) > self._max_history:
            self.metrics.retrieval_latencies = self.metrics.retrieval_latencies[-self._max_history:]

    def record_turn(self, mode: str, sources: int):
        """Record a chat turn whose completion stream was opened."""
        self.metrics.total_turns += 1
        self.metrics.turns_by_mode[mode] += 1
        if sources:
            self.metrics.grounded_turns += 1

    def record_failure(self, mode: str, error_type: str):
        """Record a chat turn that failed before streaming."""
        self.metrics.total_turns += 1
        self.metrics.failed_turns += 1
        self.metrics.turns_by_mode[mode] += 1
        self.metrics.errors_by_type[error_type] += 1

    def get_metrics(self) -> PipelineMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        result = self.metrics.to_dict()
        result["uptime_seconds"] = int(self.get_uptime().total_seconds())
        return result

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time
