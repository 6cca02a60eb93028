import json
from datetime import date

import pandas as pd
import pytest

from forecast_logics.computation import calculate_forecast
from forecast_logics.data_model import CONSTANT, DATA, METRIC, OPERATOR, Edge, Node
from forecast_logics.file_handler import (
    edge_from_dict, export_to_file, load_graph, load_variable_files,
    node_from_dict, variables_from_frame,
)
from forecast_logics.graph_converter import build_calculation_trees
from forecast_logics.variable_data import value_for_month


@pytest.fixture
def variables_csv(tmp_path):
    path = tmp_path / 'actuals.csv'
    pd.DataFrame({
        'variable_id': ['rev', 'rev', 'rev', 'cost'],
        'date': ['2023-11-01', '2023-12-15', 'not a date', '2023-12-01'],
        'value': [100, 120, 999, 'n/a'],
        'name': ['Revenue', 'Revenue', 'Revenue', 'Cost'],
        'type': ['actual', 'actual', 'actual', 'budget'],
    }).to_csv(path, index=False)
    return path


@pytest.fixture
def graph_json(tmp_path):
    path = tmp_path / 'graph.json'
    document = {
        'forecast': {'id': 'fc-1', 'name': 'FY24', 'forecastStartDate': '2024-01-01', 'forecastEndDate': '2024-03-01'},
        'nodes': [
            {'id': 'd', 'type': 'data', 'data': {'variableId': 'rev', 'offsetMonths': '-1'}},
            {'id': 'k', 'kind': 'CONSTANT', 'attributes': {'value': '2'}},
            {'id': 'op', 'type': 'OPERATOR', 'data': {'op': '*', 'inputOrder': ['d', 'k']}},
            {'id': 'm', 'type': 'METRIC', 'data': {'label': 'Revenue x2', 'historicalVariableId': 'rev',
                                                   'useCalculated': True, 'unknownKey': 1},
             'position': {'x': 10, 'y': 20}},
        ],
        'edges': [
            {'id': 'e1', 'sourceNodeId': 'k', 'targetNodeId': 'op'},
            {'source': 'd', 'target': 'op'},
            {'id': 'e3', 'source': 'op', 'target': 'm'},
        ],
    }
    path.write_text(json.dumps(document), encoding='utf-8')
    return path


def test_load_variable_files_from_csv(variables_csv):
    variables = load_variable_files([variables_csv])

    by_id = {v.id: v for v in variables}
    assert list(by_id) == ['rev', 'cost']
    rev = by_id['rev']
    assert rev.name == 'Revenue'
    assert rev.type == 'ACTUAL'
    # the unparseable date row is dropped
    assert len(rev.time_series) == 2
    assert value_for_month('rev', date(2023, 12, 1), variables) == 120.0
    assert value_for_month('cost', date(2023, 12, 1), variables) is None


def test_load_variable_files_reports_progress(variables_csv, tmp_path):
    second = tmp_path / 'budget.xlsx'
    pd.DataFrame({'variable_id': ['bud'], 'date': ['2024-01-01'], 'value': [5.0]}).to_excel(second, index=False)

    calls = []
    variables = load_variable_files([variables_csv, second], progress_callback=lambda *args: calls.append(args))

    assert [v.id for v in variables] == ['rev', 'cost', 'bud']
    assert sorted(c[0] for c in calls) == [1, 2]
    assert {c[2] for c in calls} == {'actuals.csv', 'budget.xlsx'}


def test_load_variable_files_requires_files():
    with pytest.raises(ValueError, match='No variable files'):
        load_variable_files([])


def test_variables_from_frame_missing_columns():
    with pytest.raises(ValueError, match='missing required columns'):
        variables_from_frame(pd.DataFrame({'variable_id': ['a'], 'value': [1]}))


def test_variables_from_frame_defaults():
    df = pd.DataFrame({'variable_id': [7, 7], 'date': ['2024-01-01', '2024-02-01'], 'value': [1.5, None]})
    (v,) = variables_from_frame(df)
    assert v.id == '7'
    assert v.name == '7'
    assert v.type == 'UNKNOWN'
    assert v.organization_id is None
    assert [p.value for p in v.time_series] == [1.5, None]


def test_node_and_edge_from_dict():
    node = node_from_dict({'id': 'op', 'type': 'operator', 'data': {'op': '+', 'inputOrder': ['a', 'b']}})
    assert node.kind == OPERATOR
    assert node.attributes.input_order == ('a', 'b')

    unknown = node_from_dict({'id': 'x', 'type': 'formula', 'data': {'expr': '1+1'}})
    assert unknown.kind == 'FORMULA'
    assert unknown.attributes is None

    assert edge_from_dict({'sourceNodeId': 'a', 'targetNodeId': 'b'}).id == 'a->b'


def test_load_graph(graph_json):
    forecast, nodes, edges = load_graph(graph_json)

    assert forecast['id'] == 'fc-1'
    kinds = {n.id: n.kind for n in nodes}
    assert kinds == {'d': DATA, 'k': CONSTANT, 'op': OPERATOR, 'm': METRIC}
    by_id = {n.id: n for n in nodes}
    assert by_id['d'].attributes.offset_months == -1
    assert by_id['k'].attributes.value == 2.0
    assert by_id['m'].attributes.historical_variable_id == 'rev'
    assert by_id['m'].attributes.use_calculated is True
    assert by_id['m'].position == {'x': 10, 'y': 20}
    assert [(e.id, e.source, e.target) for e in edges] == [('e1', 'k', 'op'), ('d->op', 'd', 'op'), ('e3', 'op', 'm')]


def test_loaded_graph_calculates(graph_json, variables_csv):
    forecast, nodes, edges = load_graph(graph_json)
    variables = load_variable_files([variables_csv])

    trees = build_calculation_trees(nodes, edges)
    result = calculate_forecast(trees, forecast['forecastStartDate'], forecast['forecastEndDate'], variables)

    # d reads the month before, so only January finds a value (December 2023)
    assert [v.forecast for v in result.get_metric('m').values] == [240.0, None, None]


def test_export_to_file(tmp_path, graph_json, variables_csv):
    _, nodes, edges = load_graph(graph_json)
    trees = build_calculation_trees(nodes, edges)
    result = calculate_forecast(trees, date(2024, 1, 1), date(2024, 3, 1), load_variable_files([variables_csv]))
    out = tmp_path / 'result.xlsx'

    long_label = 'Revenue times two for the whole group: FY24'
    export_to_file(result, out, metric_labels={'m': long_label})

    sheets = pd.read_excel(out, sheet_name=None)
    expected_sheet = 'Revenue times two for the whole'
    assert set(sheets) == {'Results', expected_sheet}
    assert len(expected_sheet) == 31

    results = sheets['Results']
    assert list(results.columns) == ['metric_node_id', 'date', 'forecast', 'budget', 'historical']
    assert len(results) == 3
    assert results['forecast'].iloc[0] == 240.0
    assert pd.isna(results['forecast'].iloc[1])

    per_metric = sheets[expected_sheet]
    assert list(per_metric.columns) == ['date', 'forecast', 'budget', 'historical']


def test_export_sheet_names_are_unique(tmp_path, growth_graph):
    nodes, edges = growth_graph
    nodes = nodes + [Node('m2', METRIC, nodes[-1].attributes)]
    edges = edges + [Edge('c1->m2', 'c1', 'm2')]
    trees = build_calculation_trees(nodes, edges)
    result = calculate_forecast(trees, date(2024, 1, 1), date(2024, 1, 1), [])
    out = tmp_path / 'dupes.xlsx'

    export_to_file(result, out, metric_labels={'m': 'Revenue', 'm2': 'Revenue'})

    assert set(pd.read_excel(out, sheet_name=None)) == {'Results', 'Revenue', 'Revenue_2'}


def test_export_sheet_names_ignore_case(tmp_path, growth_graph):
    nodes, edges = growth_graph
    attrs = nodes[-1].attributes
    nodes = nodes + [Node('m2', METRIC, attrs), Node('m3', METRIC, attrs)]
    edges = edges + [Edge('c1->m2', 'c1', 'm2'), Edge('c1->m3', 'c1', 'm3')]
    trees = build_calculation_trees(nodes, edges)
    result = calculate_forecast(trees, date(2024, 1, 1), date(2024, 1, 1), [])
    out = tmp_path / 'cases.xlsx'

    export_to_file(result, out, metric_labels={'m': 'Revenue', 'm2': 'REVENUE', 'm3': 'results'})

    assert set(pd.read_excel(out, sheet_name=None)) == {'Results', 'Revenue', 'REVENUE_2', 'results_2'}
