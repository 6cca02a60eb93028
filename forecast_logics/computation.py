import logging
import math
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from forecast_logics import config
from forecast_logics.data_model import (
    BUDGET, CONSTANT, DATA, FORECAST, HISTORICAL, METRIC, OPERATOR, OPERATORS,
    SEED, VALUE_KINDS,
    ForecastCalculationResult, MetricCalculationResult, MonthlyForecastValue,
    MonthlyNodeValue, NodeCalculationResult, sanitize_value,
)
from forecast_logics.errors import (
    ForecastCalculationError, MissingHistoricalDataError, NodeEvaluationError,
)
from forecast_logics.variable_data import (
    add_months, available_dates, find_variable, months_between,
    normalize_to_first_of_month, value_for_month, value_with_offset,
)

logger = logging.getLogger(__name__)


class CalculationContext:
    """
    Mutable state shared by every evaluation in one calculation pass.

    calculation_cache: (node_id, date, value kind) -> value, so a subtree shared
        by several parents or trees is evaluated once per month and kind.
    monthly_cache: metric id -> {month offset -> MonthlyForecastValue}, read back
        by SEED nodes one month later.

    Both caches are write-once per key; the lock makes them safe to share
    between worker threads.
    """

    def __init__(self, trees, variables, forecast_start_date, forecast_end_date):
        if isinstance(variables, Mapping):
            self.variables = dict(variables)
        else:
            self.variables = {}
            for variable in variables:
                self.variables.setdefault(variable.id, variable)
        self.forecast_start_date = forecast_start_date
        self.forecast_end_date = forecast_end_date
        self.trees_by_metric = {}
        for tree in trees:
            self.trees_by_metric.setdefault(tree.root_metric_node_id, tree)
        self.calculation_cache = {}
        self.monthly_cache = {}
        self._lock = threading.Lock()

    def lookup(self, key):
        """Return (hit, value) for a memo key."""
        with self._lock:
            if key in self.calculation_cache:
                return True, self.calculation_cache[key]
        return False, None

    def remember(self, key, value):
        """Store value under key unless another thread got there first; return the stored value."""
        with self._lock:
            return self.calculation_cache.setdefault(key, value)

    def store_month(self, metric_id, month_offset, monthly_value):
        with self._lock:
            self.monthly_cache.setdefault(metric_id, {}).setdefault(month_offset, monthly_value)

    def month_result(self, metric_id, month_offset):
        with self._lock:
            return self.monthly_cache.get(metric_id, {}).get(month_offset)


def calculate_forecast(trees, forecast_start_date, forecast_end_date, variables,
                       include_all_nodes=False, max_workers=None,
                       progress_callback=None, forecast_id=None):
    """
    Evaluate every metric tree for every month of the forecast range.

    Months are processed strictly in ascending order: all trees are evaluated
    for month n (forecast, budget and historical) and cached before any tree
    starts month n + 1, because SEED nodes read the previous month back.

    Args:
        trees: list of CalculationTree, as returned by convert_to_trees.
        forecast_start_date: first forecast month (any day in it).
        forecast_end_date: last forecast month, inclusive.
        variables: list of Variable or mapping of id -> Variable.
        include_all_nodes: also return per-node monthly values for every node in the trees.
        max_workers: thread count for evaluating one month's trees and value kinds
            concurrently. Defaults to config.MAX_WORKERS; 1 keeps everything on
            the calling thread.
        progress_callback: Optional callable(current_month, total_months, month_label).
        forecast_id: copied onto the result.

    Returns:
        ForecastCalculationResult with one MetricCalculationResult per tree, in tree order.

    Raises:
        ForecastCalculationError: on an empty date range or any fatal evaluation
            error (NodeEvaluationError carries the failing node id). No partial
            result is returned.
    """
    start = normalize_to_first_of_month(forecast_start_date)
    end = normalize_to_first_of_month(forecast_end_date)
    month_count = months_between(start, end)
    if month_count < 1:
        raise ForecastCalculationError(
            f"Forecast end date {end.isoformat()} is before start date {start.isoformat()}"
        )

    trees = list(trees)
    workers = max_workers if max_workers is not None else config.MAX_WORKERS
    logger.info(
        f"[CALC] Starting forecast calculation: {start.isoformat()} to {end.isoformat()} "
        f"({month_count} months, {len(trees)} trees)"
    )

    context = CalculationContext(trees, variables, start, end)
    series = [[] for _ in trees]

    try:
        if workers and workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                _run_months(trees, month_count, context, series, executor, progress_callback)
        else:
            _run_months(trees, month_count, context, series, None, progress_callback)
    except ForecastCalculationError as e:
        logger.error(f"[CALC] Forecast calculation failed: {e}")
        raise

    metrics = [
        MetricCalculationResult(metric_node_id=tree.root_metric_node_id, values=values)
        for tree, values in zip(trees, series)
    ]
    result = ForecastCalculationResult(
        calculated_at=datetime.now(timezone.utc),
        metrics=metrics,
        forecast_id=forecast_id,
    )
    if include_all_nodes:
        result.all_nodes = collect_node_values(trees, context, month_count)

    logger.info(f"[CALC] Forecast calculation complete: {len(metrics)} metrics")
    return result


def _run_months(trees, month_count, context, series, executor, progress_callback):
    for month_offset in range(month_count):
        target_date = add_months(context.forecast_start_date, month_offset)
        month_values = _calculate_month(trees, target_date, month_offset, context, executor)

        for idx, (tree, value) in enumerate(zip(trees, month_values)):
            series[idx].append(value)
            context.store_month(tree.root_metric_node_id, month_offset, value)
            logger.debug(
                f"[CALC] Cached month {month_offset} for metric {tree.root_metric_node_id}: "
                f"forecast={value.forecast}, budget={value.budget}, historical={value.historical}"
            )

        if progress_callback:
            progress_callback(month_offset + 1, month_count, target_date.isoformat())


def _calculate_month(trees, target_date, month_offset, context, executor):
    """Evaluate all trees for one month; returns one MonthlyForecastValue per tree."""
    jobs = [(tree, kind) for tree in trees for kind in VALUE_KINDS]

    if executor is None:
        results = [
            evaluate_node(tree.tree, target_date, kind, context, month_offset)
            for tree, kind in jobs
        ]
    else:
        futures = [
            executor.submit(evaluate_node, tree.tree, target_date, kind, context, month_offset)
            for tree, kind in jobs
        ]
        results = [future.result() for future in futures]

    n_kinds = len(VALUE_KINDS)
    month_values = []
    for idx in range(len(trees)):
        forecast, budget, historical = results[idx * n_kinds:(idx + 1) * n_kinds]
        month_values.append(MonthlyForecastValue(
            date=target_date, forecast=forecast, budget=budget, historical=historical,
        ))
    return month_values


# ── Node evaluation ────────────────────────────────────


def evaluate_node(node, target_date, kind, context, month_offset):
    """
    Evaluate one tree node for a month and value kind, memoized per pass.

    Results are always a finite float or None. Any failure is re-raised as a
    NodeEvaluationError naming the node it came from (the deepest one, when
    the failure started further down the tree).
    """
    key = (node.node_id, target_date, kind)
    hit, cached = context.lookup(key)
    if hit:
        return cached

    try:
        if kind not in VALUE_KINDS:
            raise ForecastCalculationError(f"Unknown calculation type: {kind}")

        if node.kind == DATA:
            result = _evaluate_data(node, target_date, context)
        elif node.kind == CONSTANT:
            result = getattr(node.attributes, 'value', None)
        elif node.kind == OPERATOR:
            result = _evaluate_operator(node, target_date, kind, context, month_offset)
        elif node.kind == METRIC:
            result = _evaluate_metric(node, target_date, kind, context, month_offset)
        elif node.kind == SEED:
            result = _evaluate_seed(node, kind, context, month_offset)
        else:
            raise ForecastCalculationError(f"Unknown node type: {node.kind}")
    except NodeEvaluationError:
        raise
    except Exception as e:
        raise NodeEvaluationError(node.node_id, str(e)) from e

    return context.remember(key, sanitize_value(result))


def _evaluate_data(node, target_date, context):
    attrs = node.attributes
    variable_id = getattr(attrs, 'variable_id', None)
    if not variable_id:
        raise ForecastCalculationError(f"DATA node {node.node_id} missing variableId")
    return value_with_offset(variable_id, target_date, attrs.offset_months or 0, context.variables)


def order_children(children, input_order):
    """
    Order an operator's children by its input_order list.

    Children named in input_order come first, in that order; the rest follow
    in their original order. Ids in input_order that are not children are ignored.
    """
    remaining = {child.node_id: child for child in children}
    ordered = []
    for node_id in input_order or ():
        child = remaining.pop(node_id, None)
        if child is not None:
            ordered.append(child)
    ordered.extend(child for child in children if child.node_id in remaining)
    return ordered


def _apply_operator(op, left, right):
    """Apply a binary operator; undefined results (x/0, overflow, (-8)^0.5) become None."""
    try:
        if op == '+':
            result = left + right
        elif op == '-':
            result = left - right
        elif op == '*':
            result = left * right
        elif op == '/':
            if right == 0:
                return None
            result = left / right
        elif op == '^':
            result = math.pow(left, right)
        else:
            raise ForecastCalculationError(f"Unknown operator: {op}")
    except (OverflowError, ValueError, ZeroDivisionError):
        return None
    return sanitize_value(result)


def _evaluate_operator(node, target_date, kind, context, month_offset):
    attrs = node.attributes
    op = getattr(attrs, 'op', None)
    if not op:
        raise ForecastCalculationError(f"OPERATOR node {node.node_id} missing operator")
    if op not in OPERATORS:
        raise ForecastCalculationError(f"Unknown operator: {op}")

    children = order_children(node.children, getattr(attrs, 'input_order', ()))
    if not children:
        raise ForecastCalculationError(f"OPERATOR node {node.node_id} has no valid children")

    values = []
    for child in children:
        value = evaluate_node(child, target_date, kind, context, month_offset)
        if value is None:
            logger.debug(f"[CALC] OPERATOR {node.node_id}: child {child.node_id} is null -> null")
            return None
        values.append(value)

    result = values[0]
    for right in values[1:]:
        result = _apply_operator(op, result, right)
        if result is None:
            return None
    return result


def _evaluate_metric(node, target_date, kind, context, month_offset):
    attrs = node.attributes
    if len(node.children) > 1:
        raise ForecastCalculationError(f"METRIC node {node.node_id} cannot have more than one child")
    child = node.children[0] if node.children else None

    if kind == FORECAST:
        # Forecast always comes from the graph when there is one
        if child is not None:
            return evaluate_node(child, target_date, kind, context, month_offset)
        if attrs.budget_variable_id:
            return value_for_month(attrs.budget_variable_id, target_date, context.variables)
        return None

    if attrs.use_calculated and child is not None:
        return evaluate_node(child, target_date, kind, context, month_offset)

    variable_id = attrs.budget_variable_id if kind == BUDGET else attrs.historical_variable_id
    if variable_id:
        return value_for_month(variable_id, target_date, context.variables)
    return None


def _evaluate_seed(node, kind, context, month_offset):
    source_id = getattr(node.attributes, 'source_metric_id', None)
    if not source_id:
        raise ForecastCalculationError(f"SEED node {node.node_id} missing sourceMetricId")

    if month_offset == 0:
        return _seed_starting_value(node, source_id, context)

    previous = context.month_result(source_id, month_offset - 1)
    if previous is None:
        logger.debug(f"[SEED] {node.node_id}: no cached month {month_offset - 1} for metric {source_id} -> null")
        return None
    return previous.get(kind)


def _seed_starting_value(node, source_id, context):
    """
    First forecast month: a SEED starts from the referenced metric's historical
    value for the month before the forecast starts, whatever the value kind.
    """
    tree = context.trees_by_metric.get(source_id)
    if tree is None:
        raise ForecastCalculationError(
            f"Referenced metric node {source_id} not found in calculation trees."
        )

    historical_id = getattr(tree.tree.attributes, 'historical_variable_id', None)
    if not historical_id:
        raise ForecastCalculationError(
            f"Metric node {source_id} has no historical variable configured; "
            f"SEED node {node.node_id} needs it for the first forecast month"
        )

    previous_month = add_months(context.forecast_start_date, -1)
    value = value_for_month(historical_id, previous_month, context.variables)
    if value is not None:
        logger.debug(f"[SEED] {node.node_id}: starting value {value} from {historical_id} at {previous_month}")
        return value

    variable = find_variable(historical_id, context.variables)
    raise MissingHistoricalDataError(
        historical_id,
        variable.name if variable is not None else None,
        previous_month.isoformat(),
        available_dates(variable),
        display_limit=config.AVAILABLE_DATES_DISPLAY_LIMIT,
    )


# ── Per-node results ───────────────────────────────────


def collect_node_values(trees, context, month_count):
    """
    Read every distinct tree node's monthly values back out of the calculation cache.

    METRIC nodes report forecast, budget and historical; every other node
    reports its forecast-kind value as ``calculated``. Values a pass never
    needed (e.g. an operand after a null short-circuit) stay None.
    """
    seen = {}
    stack = [tree.tree for tree in reversed(trees)]
    while stack:
        tree_node = stack.pop()
        if tree_node.node_id in seen:
            continue
        seen[tree_node.node_id] = tree_node
        stack.extend(reversed(tree_node.children))

    dates = [add_months(context.forecast_start_date, i) for i in range(month_count)]
    cache = context.calculation_cache
    results = []
    for node_id, tree_node in seen.items():
        values = []
        for d in dates:
            if tree_node.kind == METRIC:
                values.append(MonthlyNodeValue(
                    date=d,
                    forecast=cache.get((node_id, d, FORECAST)),
                    budget=cache.get((node_id, d, BUDGET)),
                    historical=cache.get((node_id, d, HISTORICAL)),
                ))
            else:
                values.append(MonthlyNodeValue(date=d, calculated=cache.get((node_id, d, FORECAST))))
        results.append(NodeCalculationResult(node_id=node_id, kind=tree_node.kind, values=values))
    return results
