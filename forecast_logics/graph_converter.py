import logging
from collections import defaultdict

from forecast_logics.data_model import (
    METRIC, NODE_KINDS, OPERATOR, OPERATORS, SEED,
    CalculationTree, CalculationTreeNode, GraphValidationResult,
)
from forecast_logics.errors import GraphValidationError

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


def validate_graph(nodes, edges):
    """
    Check a forecast graph's structure before it is converted to trees.

    Errors (block conversion):
        - no METRIC node at all
        - duplicate node ids, or nodes of an unknown kind
        - edges whose source or target is not a known node
        - cycles, each reported with its path (a -> b -> a)
        - METRIC or other non-OPERATOR nodes with more than one input
        - SEED nodes without a source metric, or pointing at a missing or non-METRIC node
        - OPERATOR nodes with a missing or unknown operator symbol

    Warnings (never block):
        - OPERATOR nodes with fewer than two inputs
        - nodes that are not connected to anything
        - non-METRIC nodes whose value flows nowhere
        - METRIC nodes without a label or without budget/historical variables

    Args:
        nodes: list of Node.
        edges: list of Edge.

    Returns:
        GraphValidationResult with all errors and warnings collected.
    """
    errors = []
    warnings = []
    logger.info(f"[GRAPH] Validating graph: {len(nodes)} nodes, {len(edges)} edges")

    node_by_id = {}
    for node in nodes:
        if node.id in node_by_id:
            errors.append(f"Duplicate node id: {node.id}")
        node_by_id.setdefault(node.id, node)

    if not any(n.kind == METRIC for n in nodes):
        errors.append('Graph must contain at least one METRIC node')

    valid_edges = []
    for edge in edges:
        ok = True
        if edge.source not in node_by_id:
            errors.append(f"Edge {edge.id} references non-existent source node: {edge.source}")
            ok = False
        if edge.target not in node_by_id:
            errors.append(f"Edge {edge.id} references non-existent target node: {edge.target}")
            ok = False
        if ok:
            valid_edges.append(edge)

    for cycle in _find_cycles(list(node_by_id), valid_edges):
        errors.append(f"Graph contains a cycle: {' -> '.join(cycle)}")

    input_counts = defaultdict(int)
    output_counts = defaultdict(int)
    for edge in valid_edges:
        input_counts[edge.target] += 1
        output_counts[edge.source] += 1

    for node in node_by_id.values():
        inputs = input_counts[node.id]
        attrs = node.attributes

        if node.kind not in NODE_KINDS:
            errors.append(f"Node {node.id} has unknown type: {node.kind}")

        if node.kind == METRIC and inputs > 1:
            errors.append(f"METRIC node {node.id} has {inputs} inputs but can have at most one")
        elif node.kind != OPERATOR and inputs > 1:
            errors.append(
                f"Node {node.id} ({node.kind}) has {inputs} inputs but only OPERATOR nodes "
                f"can accept multiple inputs"
            )

        if node.kind == OPERATOR:
            op = getattr(attrs, 'op', None)
            if not op:
                errors.append(f"OPERATOR node {node.id} missing operator")
            elif op not in OPERATORS:
                errors.append(f"OPERATOR node {node.id} has unknown operator: {op}")
            if inputs < 2:
                warnings.append(f"OPERATOR node {node.id} has {inputs} input(s); operators normally combine two or more")

        elif node.kind == SEED:
            _check_seed(node, node_by_id, errors)

        elif node.kind == METRIC:
            _check_metric(node, warnings)

        if inputs == 0 and output_counts[node.id] == 0:
            if node.kind != METRIC:
                warnings.append(f"Node {node.id} ({node.kind}) is not connected to any other nodes")
        elif output_counts[node.id] == 0 and node.kind != METRIC:
            warnings.append(f"Node {node.id} ({node.kind}) has no outgoing edges; its value is not used by any metric")

    is_valid = not errors
    logger.info(f"[GRAPH] Validation complete - {'VALID' if is_valid else 'INVALID'}")
    for message in errors:
        logger.info(f"[GRAPH] error: {message}")
    for message in warnings:
        logger.debug(f"[GRAPH] warning: {message}")

    return GraphValidationResult(is_valid=is_valid, errors=errors, warnings=warnings)


def _check_seed(node, node_by_id, errors):
    source_id = getattr(node.attributes, 'source_metric_id', None)
    if not source_id:
        errors.append(f"SEED node {node.id} missing required sourceMetricId")
        return
    referenced = node_by_id.get(source_id)
    if referenced is None:
        errors.append(f"SEED node {node.id} references non-existent metric: {source_id}")
    elif referenced.kind != METRIC:
        errors.append(
            f"SEED node {node.id} sourceMetricId must reference a METRIC node, "
            f"found: {referenced.kind} ({source_id})"
        )


def _check_metric(node, warnings):
    attrs = node.attributes
    if not getattr(attrs, 'label', None):
        warnings.append(f"METRIC node {node.id} missing label")
    if not getattr(attrs, 'budget_variable_id', None):
        warnings.append(f"METRIC node {node.id} has no budget variable configured")
    if not getattr(attrs, 'historical_variable_id', None):
        warnings.append(f"METRIC node {node.id} has no historical variable configured")


def _find_cycles(node_ids, edges):
    """
    DFS with WHITE/GRAY/BLACK colouring over source -> target edges.

    Every back edge into a GRAY node closes a cycle; the cycle is returned as the
    slice of the current DFS path from that node, with the node repeated at the end.
    """
    adjacency = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)

    colour = {node_id: _WHITE for node_id in node_ids}
    path = []
    cycles = []

    def visit(node_id):
        colour[node_id] = _GRAY
        path.append(node_id)
        for target in adjacency[node_id]:
            if colour[target] == _GRAY:
                cycles.append(path[path.index(target):] + [target])
            elif colour[target] == _WHITE:
                visit(target)
        path.pop()
        colour[node_id] = _BLACK

    for node_id in node_ids:
        if colour[node_id] == _WHITE:
            visit(node_id)
    return cycles


def convert_to_trees(nodes, edges):
    """
    Build one calculation tree per METRIC node.

    Each tree is rooted at the metric and holds, as children, the nodes whose
    edges point into it, recursively. A node feeding several metrics is copied
    into each tree. Children keep the order of their edges.

    The graph must already have passed validate_graph; a cyclic graph would
    recurse without end.

    Args:
        nodes: list of Node.
        edges: list of Edge.

    Returns:
        list of CalculationTree, in node order.
    """
    node_by_id = {}
    for node in nodes:
        node_by_id.setdefault(node.id, node)

    # target -> source ids, in edge order
    upstream = defaultdict(list)
    for edge in edges:
        if edge.source in node_by_id and edge.target in node_by_id:
            upstream[edge.target].append(edge.source)

    def build(node_id):
        node = node_by_id[node_id]
        return CalculationTreeNode(
            node_id=node.id,
            kind=node.kind,
            attributes=node.attributes,
            children=[build(source_id) for source_id in upstream[node_id]],
        )

    trees = []
    for node in node_by_id.values():
        if node.kind != METRIC:
            continue
        trees.append(CalculationTree(root_metric_node_id=node.id, tree=build(node.id)))
        logger.debug(f"[GRAPH] Built tree for metric {node.id} ({len(upstream[node.id])} direct input(s))")

    logger.info(f"[GRAPH] Created {len(trees)} calculation trees")
    return trees


def build_calculation_trees(nodes, edges):
    """
    Validate a graph and convert it to calculation trees in one step.

    Raises:
        GraphValidationError: carrying every validation error, if any were found.
    """
    validation = validate_graph(nodes, edges)
    for message in validation.warnings:
        logger.warning(f"[GRAPH] {message}")
    if not validation.is_valid:
        raise GraphValidationError(validation.errors, validation.warnings)
    return convert_to_trees(nodes, edges)
