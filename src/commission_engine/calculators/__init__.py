"""Commission computation engine."""

from commission_engine.calculators.engine import CommissionEngine, RunLimitExceededError
from commission_engine.calculators.formula_sandbox import FormulaSandbox
from commission_engine.calculators.line_builder import PayoutLineBuilder
from commission_engine.calculators.metric_aggregator import MetricAggregator
from commission_engine.calculators.org_hierarchy import OrgHierarchyIndex
from commission_engine.calculators.period_resolver import PeriodResolver, period_start_for

__all__ = [
    "CommissionEngine",
    "RunLimitExceededError",
    "FormulaSandbox",
    "PayoutLineBuilder",
    "MetricAggregator",
    "OrgHierarchyIndex",
    "PeriodResolver",
    "period_start_for",
]
