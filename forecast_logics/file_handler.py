import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import pandas as pd

from forecast_logics import config
from forecast_logics.data_model import (
    ATTRIBUTE_TYPES, CONSTANT, DATA, OPERATOR, VALUE_KINDS,
    Edge, Node, TimeSeriesPoint, Variable,
)

logger = logging.getLogger(__name__)

# camelCase keys written by the graph editor -> attribute field names
_ATTRIBUTE_KEYS = {
    'variableId': 'variable_id',
    'offsetMonths': 'offset_months',
    'inputOrder': 'input_order',
    'budgetVariableId': 'budget_variable_id',
    'historicalVariableId': 'historical_variable_id',
    'useCalculated': 'use_calculated',
    'sourceMetricId': 'source_metric_id',
}


# ── Variables ──────────────────────────────────────────


def _read_table(path):
    """Read one CSV or Excel file, trying several encodings for CSV."""
    filename = Path(path).name

    if str(path).lower().endswith('.csv'):
        for enc in config.CSV_ENCODINGS:
            try:
                df = pd.read_csv(path, encoding=enc)
                logger.debug(f"[LOAD] {filename} loaded with encoding: {enc}")
                return df
            except (UnicodeDecodeError, LookupError):
                continue
        raise ValueError(f"Could not load {filename} with any supported encoding")

    return pd.read_excel(path)


def load_variable_files(file_paths, progress_callback=None):
    """
    Load variable time series from CSV/Excel files in parallel.

    Every file is in long format, one row per data point:
        variable_id, date, value[, name, type, organization_id]

    Args:
        file_paths: list of file paths.
        progress_callback: Optional callable(current_idx, total, filename).

    Returns:
        list of Variable, in order of first appearance.

    Raises:
        ValueError: If no files were given, or a file lacks the required columns.
    """
    file_paths = [p for p in file_paths if p]
    if not file_paths:
        raise ValueError('No variable files were given.')

    frames = {}
    completed = 0
    total_files = len(file_paths)

    with ThreadPoolExecutor(max_workers=min(total_files, os.cpu_count() or 4)) as executor:
        futures = {executor.submit(_read_table, path): idx for idx, path in enumerate(file_paths)}

        for future in as_completed(futures):
            idx = futures[future]
            frames[idx] = future.result()
            completed += 1
            filename = Path(file_paths[idx]).name
            if progress_callback:
                progress_callback(completed, total_files, filename)
            logger.info(f"[LOAD] Completed {completed}/{total_files}: {filename}")

    # Keep the caller's file order so duplicate points resolve the same way every run
    combined = pd.concat([frames[idx] for idx in sorted(frames)], ignore_index=True)
    return variables_from_frame(combined)


def variables_from_frame(df):
    """
    Build Variables from a long-format DataFrame.

    Rows with an unparseable date are dropped; blank or non-numeric values are
    kept as points with no value. Optional name/type/organization_id columns
    are read from the first row of each variable.
    """
    missing = [c for c in (config.VARIABLE_ID_COL, config.DATE_COL, config.VALUE_COL) if c not in df.columns]
    if missing:
        raise ValueError(f"Variable data is missing required columns: {missing}")

    df = df.copy()
    df[config.DATE_COL] = pd.to_datetime(df[config.DATE_COL], errors='coerce')
    dropped = int(df[config.DATE_COL].isna().sum())
    if dropped:
        logger.warning(f"[LOAD] Dropping {dropped} rows with unreadable dates")
        df = df[df[config.DATE_COL].notna()]
    df[config.VALUE_COL] = pd.to_numeric(df[config.VALUE_COL], errors='coerce')
    df[config.VARIABLE_ID_COL] = df[config.VARIABLE_ID_COL].astype(str)

    variables = []
    for variable_id, group in df.groupby(config.VARIABLE_ID_COL, sort=False):
        first = group.iloc[0]
        points = [
            TimeSeriesPoint(date=ts.date(), value=None if pd.isna(value) else float(value))
            for ts, value in zip(group[config.DATE_COL], group[config.VALUE_COL])
        ]
        variables.append(Variable(
            id=variable_id,
            name=_optional(first, 'name') or variable_id,
            type=(_optional(first, 'type') or 'UNKNOWN').upper(),
            organization_id=_optional(first, 'organization_id'),
            time_series=points,
        ))

    logger.info(f"[LOAD] Built {len(variables)} variables from {len(df)} data points")
    return variables


def _optional(row, column):
    if column not in row.index or pd.isna(row[column]):
        return None
    return str(row[column])


# ── Graph ──────────────────────────────────────────────


def node_from_dict(data):
    """
    Build a Node from a stored node record.

    Accepts ``kind`` or ``type`` for the node kind and ``attributes`` or ``data``
    for its payload; camelCase attribute keys are mapped to field names and
    unknown keys are ignored.
    """
    kind = str(data.get('kind') or data.get('type') or '').upper()
    raw = data.get('attributes') or data.get('data') or {}

    attr_type = ATTRIBUTE_TYPES.get(kind)
    attributes = None
    if attr_type is not None:
        fields = set(attr_type.__dataclass_fields__)
        kwargs = {}
        for key, value in raw.items():
            name = _ATTRIBUTE_KEYS.get(key, key)
            if name in fields:
                kwargs[name] = value
        if kind == OPERATOR:
            kwargs['input_order'] = tuple(kwargs.get('input_order') or ())
        elif kind == DATA:
            kwargs['offset_months'] = int(kwargs.get('offset_months') or 0)
        elif kind == CONSTANT and kwargs.get('value') is not None:
            kwargs['value'] = float(kwargs['value'])
        attributes = attr_type(**kwargs)

    return Node(id=str(data['id']), kind=kind, attributes=attributes, position=data.get('position'))


def edge_from_dict(data):
    """Build an Edge from ``source``/``target`` or ``sourceNodeId``/``targetNodeId`` keys."""
    source = data.get('source', data.get('sourceNodeId'))
    target = data.get('target', data.get('targetNodeId'))
    edge_id = data.get('id') or f"{source}->{target}"
    return Edge(id=str(edge_id), source=str(source), target=str(target))


def load_graph(path):
    """
    Load a forecast graph from a JSON file.

    Layout:
        {"forecast": {"id", "name", "forecastStartDate", "forecastEndDate"},
         "nodes": [...], "edges": [...]}

    Returns:
        tuple: (forecast, nodes, edges)
        - forecast: the "forecast" dict as stored (empty if absent)
        - nodes: list of Node
        - edges: list of Edge
    """
    with open(path, encoding='utf-8') as fh:
        document = json.load(fh)

    forecast = document.get('forecast') or {}
    nodes = [node_from_dict(n) for n in document.get('nodes', [])]
    edges = [edge_from_dict(e) for e in document.get('edges', [])]
    logger.info(f"[LOAD] Graph loaded from {Path(path).name}: {len(nodes)} nodes, {len(edges)} edges")
    return forecast, nodes, edges


# ── Export ─────────────────────────────────────────────


def export_to_file(result, path, metric_labels=None):
    """
    Export calculation results to Excel.

    Sheet layout:
        - "Results": every metric in long format (metric_node_id, date, forecast, budget, historical).
        - One sheet per metric: date, forecast, budget, historical.
          Sheet name = metric label (or id), truncated to 31 chars for the Excel limit.

    Args:
        result: ForecastCalculationResult.
        path: Output .xlsx file path.
        metric_labels: Optional dict metric id -> display label.
    """
    metric_labels = metric_labels or {}
    df = result.to_frame()
    used_names = {'results'}

    with pd.ExcelWriter(path, engine=config.EXCEL_ENGINE) as writer:
        df.to_excel(writer, sheet_name='Results', index=False)

        for metric in result.metrics:
            label = metric_labels.get(metric.metric_node_id) or metric.metric_node_id
            sheet_name = _unique_sheet_name(label, used_names)
            metric_df = (
                df[df['metric_node_id'] == metric.metric_node_id]
                .loc[:, ['date', *VALUE_KINDS]]
                .reset_index(drop=True)
            )
            metric_df.to_excel(writer, sheet_name=sheet_name, index=False)
            logger.info(f"[EXPORT] Sheet '{sheet_name}' written ({len(metric_df)} rows)")


def _unique_sheet_name(label, used_names):
    # Excel forbids these characters in sheet names
    cleaned = ''.join('_' if ch in '[]:*?/\\' else ch for ch in str(label))
    limit = config.SHEET_NAME_LIMIT
    name = cleaned[:limit]
    suffix = 2
    # Excel compares sheet names case-insensitively
    while name.lower() in used_names:
        tail = f"_{suffix}"
        name = cleaned[:limit - len(tail)] + tail
        suffix += 1
    used_names.add(name.lower())
    return name
