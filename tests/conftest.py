from datetime import date

import pytest

from graph_builders import constant, edge, metric, operator, variable


@pytest.fixture
def forecast_range():
    """Six forecast months, Jan-Jun 2024."""
    return date(2024, 1, 1), date(2024, 6, 1)


@pytest.fixture
def revenue_variables():
    """Historical revenue for late 2023 and budget revenue for 2024."""
    historical = variable('var-hist', {(2023, m): 1000.0 + 100 * m for m in range(7, 13)}, name='Revenue Actuals')
    budget = variable('var-budget', {(2024, m): 2000.0 + m for m in range(1, 13)}, name='Revenue Budget', type='BUDGET')
    return [historical, budget]


@pytest.fixture
def growth_graph():
    """CONSTANT(1000) * CONSTANT(1.1) -> METRIC."""
    nodes = [
        constant('c1', 1000),
        constant('c2', 1.1),
        operator('op', '*', input_order=['c1', 'c2']),
        metric('m', label='Revenue'),
    ]
    edges = [edge('c2', 'op'), edge('c1', 'op'), edge('op', 'm')]
    return nodes, edges
