import math
from dataclasses import dataclass, field
from datetime import date, datetime

import numpy as np
import pandas as pd


# Node kinds
DATA = 'DATA'
CONSTANT = 'CONSTANT'
OPERATOR = 'OPERATOR'
METRIC = 'METRIC'
SEED = 'SEED'
NODE_KINDS = (DATA, CONSTANT, OPERATOR, METRIC, SEED)

# Value kinds evaluated for every metric and month
FORECAST = 'forecast'
BUDGET = 'budget'
HISTORICAL = 'historical'
VALUE_KINDS = (FORECAST, BUDGET, HISTORICAL)

OPERATORS = ('+', '-', '*', '/', '^')

VARIABLE_TYPES = ('ACTUAL', 'BUDGET', 'INPUT', 'UNKNOWN')


def sanitize_value(value):
    """
    Return value as a float, or None for missing, NaN, inf and non-numeric values.

    Anything float() accepts (Decimal, numeric strings) is converted.
    """
    if value is None or isinstance(value, (bool, np.bool_, complex)):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return value if math.isfinite(value) else None


def month_start(value):
    """Normalize a date, datetime, Timestamp or ISO string to the first day of its month."""
    ts = pd.Timestamp(value)
    return date(ts.year, ts.month, 1)


# ── Variables ──────────────────────────────────────────


@dataclass(frozen=True)
class TimeSeriesPoint:
    date: date
    value: float = None


@dataclass
class Variable:
    """
    A named monthly time series owned by an organization.

    The points are kept as supplied; ``series`` is a pandas view indexed by the
    first-of-month Timestamp of each point and is what lookups read. When two
    points fall in the same month the first one wins.
    """

    id: str
    name: str
    type: str = 'UNKNOWN'
    organization_id: str = None
    time_series: list = field(default_factory=list)
    series: pd.Series = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        index = [pd.Timestamp(month_start(p.date)) for p in self.time_series]
        values = [sanitize_value(p.value) for p in self.time_series]
        series = pd.Series(values, index=pd.DatetimeIndex(index), dtype=object)
        self.series = series[~series.index.duplicated(keep='first')]


# ── Graph ──────────────────────────────────────────────


@dataclass(frozen=True)
class DataAttributes:
    variable_id: str = None
    offset_months: int = 0
    name: str = None


@dataclass(frozen=True)
class ConstantAttributes:
    value: float = None
    name: str = None


@dataclass(frozen=True)
class OperatorAttributes:
    op: str = None
    input_order: tuple = ()


@dataclass(frozen=True)
class MetricAttributes:
    label: str = None
    budget_variable_id: str = None
    historical_variable_id: str = None
    use_calculated: bool = False


@dataclass(frozen=True)
class SeedAttributes:
    source_metric_id: str = None


ATTRIBUTE_TYPES = {
    DATA: DataAttributes,
    CONSTANT: ConstantAttributes,
    OPERATOR: OperatorAttributes,
    METRIC: MetricAttributes,
    SEED: SeedAttributes,
}


@dataclass(frozen=True)
class Node:
    """A graph node. ``attributes`` is the dataclass matching ``kind``; ``position`` is editor metadata."""

    id: str
    kind: str
    attributes: object = None
    position: dict = None


@dataclass(frozen=True)
class Edge:
    """Directed edge: ``source`` feeds into ``target`` as one of its inputs."""

    id: str
    source: str
    target: str


@dataclass
class CalculationTreeNode:
    node_id: str
    kind: str
    attributes: object
    children: list = field(default_factory=list)


@dataclass
class CalculationTree:
    root_metric_node_id: str
    tree: CalculationTreeNode


@dataclass(frozen=True)
class GraphValidationResult:
    is_valid: bool
    errors: list
    warnings: list


# ── Results ────────────────────────────────────────────


@dataclass(frozen=True)
class MonthlyForecastValue:
    date: date
    forecast: float = None
    budget: float = None
    historical: float = None

    def get(self, kind):
        """Return the field for a value kind ('forecast', 'budget' or 'historical')."""
        if kind not in VALUE_KINDS:
            raise ValueError(f"Unknown calculation type: {kind}")
        return getattr(self, kind)


@dataclass(frozen=True)
class MonthlyNodeValue:
    date: date
    forecast: float = None
    budget: float = None
    historical: float = None
    calculated: float = None


@dataclass
class MetricCalculationResult:
    metric_node_id: str
    values: list = field(default_factory=list)


@dataclass
class NodeCalculationResult:
    node_id: str
    kind: str
    values: list = field(default_factory=list)


@dataclass
class ForecastCalculationResult:
    calculated_at: datetime
    metrics: list = field(default_factory=list)
    forecast_id: str = None
    all_nodes: list = None

    def get_metric(self, metric_node_id):
        """Return the result for one metric, or None if it was not calculated."""
        for metric in self.metrics:
            if metric.metric_node_id == metric_node_id:
                return metric
        return None

    def to_frame(self):
        """
        Flatten the metric series into a long-format DataFrame.

        Columns: metric_node_id, date, forecast, budget, historical.
        Missing values become NaN.
        """
        rows = [
            {
                'metric_node_id': metric.metric_node_id,
                'date': pd.Timestamp(v.date),
                FORECAST: v.forecast,
                BUDGET: v.budget,
                HISTORICAL: v.historical,
            }
            for metric in self.metrics
            for v in metric.values
        ]
        columns = ['metric_node_id', 'date', FORECAST, BUDGET, HISTORICAL]
        df = pd.DataFrame(rows, columns=columns)
        for col in VALUE_KINDS:
            df[col] = pd.to_numeric(df[col], errors='coerce')
        return df
