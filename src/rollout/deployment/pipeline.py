"""One tick of signal collection and evaluation."""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.rollout.deployment.evaluator import EvaluationResult, ThresholdEvaluator
from src.rollout.monitoring.aggregator import Aggregator
from src.rollout.monitoring.metric_source import SIGNAL_NAMES, MetricSource
from src.rollout.monitoring.metrics import record_evaluation, record_probe_results
from src.rollout.monitoring.probe import EndpointProbe, ProbeResult


@dataclass
class TickObservation:
    """Everything collected and decided during one tick."""
    tick: int
    timestamp: datetime
    probes: List[ProbeResult]
    fetched: Dict[str, Optional[float]]
    values: Dict[str, Optional[float]]
    evaluation: EvaluationResult
    signals: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def failed_endpoints(self) -> List[ProbeResult]:
        return [result for result in self.probes if not result.success]

    def snapshot(self) -> Dict[str, Any]:
        """Metrics snapshot stored on the ledger record."""
        return {
            **self.values,
            "signals": self.signals,
            "source": self.evaluation.source,
            "evaluation": self.evaluation.status.value,
            "sampleSize": self.evaluation.sample_size,
            "tick": self.tick,
            "updatedAt": self.timestamp.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "timestamp": self.timestamp.isoformat(),
            "endpoints": [result.to_dict() for result in self.probes],
            "metrics": self.values,
            "signals": self.signals,
            "evaluation": self.evaluation.to_dict(),
            "result": self.evaluation.status.name,
        }


class SignalPipeline:
    """Probes, fetches, aggregates and evaluates for one deployment."""

    def __init__(
        self,
        probe: Optional[EndpointProbe],
        metric_source: MetricSource,
        aggregator: Aggregator,
        evaluator: ThresholdEvaluator,
        kind: str,
        signals: Iterable[str] = SIGNAL_NAMES,
    ):
        """Initialize pipeline.

        Args:
            probe: Endpoint prober (None runs without probes)
            metric_source: Backend metrics for the deployment namespace
            aggregator: Tick window and run totals
            evaluator: Threshold evaluator for per-tick decisions
            kind: Deployment kind label for exported metrics
            signals: Informational metrics fetched alongside the thresholded ones
        """
        self.probe = probe
        self.metric_source = metric_source
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.kind = kind
        self.signals = [name for name in signals if name not in evaluator.thresholds.limits]

    async def collect(self, window: Tuple[datetime, datetime]) -> TickObservation:
        """Run one tick.

        Probes and the metric fetch run concurrently; neither can raise for
        an unreachable endpoint or a missing metric.

        Args:
            window: (start, end) range for backend queries; end is the tick time
        """
        tick = self.aggregator.advance()

        probes = self.probe.probe_all() if self.probe else _no_probes()
        fetch = self.metric_source.fetch(self.evaluator.thresholds.backend_metrics + self.signals, window)
        results, fetched = await asyncio.gather(probes, fetch)

        self.aggregator.record_probes(results)
        self.aggregator.record_metrics(fetched, timestamp=window[1])

        values = self.aggregator.snapshot(self.evaluator.thresholds.metric_names)
        evaluation = self.evaluator.evaluate(
            values,
            sample_size=self.aggregator.total_requests,
            source=self.metric_source.origin,
        )

        record_probe_results(results)
        record_evaluation(self.kind, evaluation)

        return TickObservation(
            tick=tick,
            timestamp=window[1],
            probes=results,
            fetched=fetched,
            values=values,
            evaluation=evaluation,
            signals={name: fetched.get(name) for name in self.signals},
        )

    def evaluate_run(self, evaluator: ThresholdEvaluator) -> Tuple[Dict[str, Optional[float]], EvaluationResult]:
        """Evaluate everything collected so far against another thresholds table."""
        values = self.aggregator.snapshot(evaluator.thresholds.metric_names, whole_run=True)
        evaluation = evaluator.evaluate(
            values,
            sample_size=self.aggregator.total_requests,
            source=self.metric_source.origin,
        )
        return values, evaluation

    def run_signals(self) -> Dict[str, Optional[float]]:
        """Run-wide averages of the informational signals."""
        return self.aggregator.snapshot(self.signals, whole_run=True)


async def _no_probes() -> List[ProbeResult]:
    return []
