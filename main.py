import argparse
import logging
import sys

from forecast_logics import config
from forecast_logics.computation import calculate_forecast
from forecast_logics.data_model import METRIC
from forecast_logics.errors import ForecastCalculationError, GraphValidationError
from forecast_logics.file_handler import export_to_file, load_graph, load_variable_files
from forecast_logics.graph_converter import build_calculation_trees

logger = logging.getLogger('forecast')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Calculate a forecast graph month by month and export the results.')
    parser.add_argument('graph', help='forecast graph JSON file')
    parser.add_argument('variables', nargs='+', help='variable data files (CSV or Excel, long format)')
    parser.add_argument('-o', '--output', default='forecast_results.xlsx', help='output .xlsx path')
    parser.add_argument('--start', help='forecast start date (defaults to the graph file)')
    parser.add_argument('--end', help='forecast end date (defaults to the graph file)')
    parser.add_argument('--workers', type=int, default=config.MAX_WORKERS, help='threads per month')
    return parser.parse_args(argv)


def run(args):
    forecast, nodes, edges = load_graph(args.graph)
    variables = load_variable_files(args.variables)

    start = args.start or forecast.get('forecastStartDate')
    end = args.end or forecast.get('forecastEndDate')
    if not start or not end:
        raise ValueError('Forecast start and end dates are required (graph file or --start/--end).')

    trees = build_calculation_trees(nodes, edges)

    def report(current, total, label):
        logger.info(f"[CALC] Month {current}/{total}: {label}")

    result = calculate_forecast(
        trees, start, end, variables,
        max_workers=args.workers,
        progress_callback=report,
        forecast_id=forecast.get('id'),
    )

    labels = {n.id: n.attributes.label for n in nodes if n.kind == METRIC and n.attributes.label}
    export_to_file(result, args.output, metric_labels=labels)
    logger.info(f"[EXPORT] Results written to {args.output}")
    return result


def main(argv=None):
    logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    args = parse_args(argv)
    try:
        run(args)
    except GraphValidationError as e:
        for message in e.errors:
            logger.error(f"[GRAPH] {message}")
        return 2
    except (ForecastCalculationError, ValueError, OSError) as e:
        logger.error(f"ERROR: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
