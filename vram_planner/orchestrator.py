"""Entry points tying normalization, strategies and command generation together."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from vram_planner.command import DeploymentConfiguration, build_deployment
from vram_planner.errors import PlannerError
from vram_planner.inputs import normalize
from vram_planner.strategies import balanced, latency, throughput
from vram_planner.strategies.base import OptimizationStrategy, OptimizedConfig
from vram_planner.validation import require_choice

logger = logging.getLogger(__name__)

STRATEGIES: MappingProxyType[str, OptimizationStrategy] = MappingProxyType({
    "throughput": throughput.STRATEGY,
    "latency": latency.STRATEGY,
    "balanced": balanced.STRATEGY,
})

# workload type -> preferred strategy
WORKLOAD_PREFERENCES = MappingProxyType({
    "chat": "latency",
    "completion": "throughput",
    "code-generation": "balanced",
    "batch": "throughput",
    "serving": "balanced",
    "embedding": "throughput",
    "mixed": "balanced",
})
DEFAULT_PREFERENCE = "balanced"


def get_strategy(name: str) -> OptimizationStrategy:
    return STRATEGIES[require_choice("strategy", name, STRATEGIES)]


def generate_deployment(params: Mapping[str, Any], strategy: str = "balanced") -> DeploymentConfiguration:
    """Optimize *params* with one strategy and return a validated deployment."""
    optimized = get_strategy(strategy).optimized_config(params)
    deployment = build_deployment(strategy, optimized.parameters, optimized)
    for warning in deployment.validation.warnings:
        logger.warning("%s deployment: %s", strategy, warning)
    return deployment


@dataclass(frozen=True)
class StrategyOutcome:
    strategy: str
    viable: bool
    config: OptimizedConfig | None = None
    error: str | None = None


@dataclass(frozen=True)
class StrategyComparison:
    outcomes: dict[str, StrategyOutcome]
    recommended: str | None
    reason: str

    @property
    def viable(self) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.viable]


def compare_strategies(params: Mapping[str, Any]) -> StrategyComparison:
    """Run every strategy and recommend one.

    A strategy that cannot produce a configuration is recorded as non-viable
    instead of aborting the comparison. The recommendation follows the
    workload-type preference table, falling back to the viable strategy with
    the highest memory efficiency, measured as its GPU memory utilization.
    """
    workload_type = normalize(params).workload.workload_type
    outcomes: dict[str, StrategyOutcome] = {}
    for name, strategy in STRATEGIES.items():
        try:
            outcomes[name] = StrategyOutcome(name, True, config=strategy.optimized_config(params))
        except PlannerError as e:
            logger.warning("Strategy %s is not viable: %s", name, e)
            outcomes[name] = StrategyOutcome(name, False, error=str(e))

    viable = {name: o for name, o in outcomes.items() if o.viable}
    if not viable:
        return StrategyComparison(outcomes, None, "No strategy can fit this model on the given GPU")

    preferred = WORKLOAD_PREFERENCES.get(workload_type, DEFAULT_PREFERENCE)
    if preferred in viable:
        reason = f"{preferred} is preferred for {workload_type} workloads"
        return StrategyComparison(outcomes, preferred, reason)

    best = max(viable.values(), key=lambda o: o.config.batch.memory_utilization)
    reason = (
        f"{preferred} is not viable; {best.strategy} has the highest memory efficiency "
        f"({best.config.batch.memory_utilization:.0%} GPU memory utilization)"
    )
    return StrategyComparison(outcomes, best.strategy, reason)
