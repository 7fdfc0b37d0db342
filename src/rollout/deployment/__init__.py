"""Deployment decision components: evaluation, ledger and controllers."""

from .evaluator import (
    ThresholdEvaluator,
    Thresholds,
    EvaluationResult,
    EvaluationStatus,
    MetricCheck,
)

from .hysteresis import (
    FailureHysteresis,
    HealthState,
)

from .ledger import DeploymentLedger

from .backups import (
    BackupRegistry,
    Backup,
)

from .rollback import (
    RollbackController,
    RollbackOptions,
    RollbackOutcome,
    RollbackResult,
)

from .promotion import (
    PromotionController,
    PromotionConfig,
    PromotionOutcome,
    PromotionResult,
)

from .monitor import (
    DeploymentMonitor,
    MonitorConfig,
    MonitorOutcome,
    MonitorResult,
    WindowVerdict,
)

from .release import prepare_release

__all__ = [
    # Evaluation
    "ThresholdEvaluator",
    "Thresholds",
    "EvaluationResult",
    "EvaluationStatus",
    "MetricCheck",
    "FailureHysteresis",
    "HealthState",
    # State
    "DeploymentLedger",
    "BackupRegistry",
    "Backup",
    # Controllers
    "RollbackController",
    "RollbackOptions",
    "RollbackOutcome",
    "RollbackResult",
    "PromotionController",
    "PromotionConfig",
    "PromotionOutcome",
    "PromotionResult",
    "DeploymentMonitor",
    "MonitorConfig",
    "MonitorOutcome",
    "MonitorResult",
    "WindowVerdict",
    "prepare_release",
]
