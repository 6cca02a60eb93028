class ForecastCalculationError(Exception):
    """Base failure raised by the forecast engine. Carries a descriptive message."""
    pass


class GraphValidationError(ForecastCalculationError):
    """
    Raised when a graph fails structural validation.

    All problems are collected first so the caller can show them at once.

    Args:
        errors: list of human-readable error messages.
        warnings: list of non-fatal warnings found in the same pass.
    """

    def __init__(self, errors, warnings=None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(f"Invalid forecast graph: {', '.join(self.errors)}")


class NodeEvaluationError(ForecastCalculationError):
    """Wraps any failure raised while evaluating a node, tagged with the node id."""

    def __init__(self, node_id, message):
        self.node_id = node_id
        super().__init__(f"Node evaluation failed for {node_id}: {message}")


class MissingHistoricalDataError(ForecastCalculationError):
    """
    Raised when a SEED node cannot find the historical value it starts from.

    The message lists the dates the variable does have, since a misaligned
    forecast start month is the usual cause.
    """

    def __init__(self, variable_id, variable_name, expected_date, available_dates, display_limit=10):
        self.variable_id = variable_id
        self.variable_name = variable_name
        self.expected_date = expected_date
        self.available_dates = list(available_dates)

        if self.available_dates:
            shown = ', '.join(self.available_dates[:display_limit])
            hidden = len(self.available_dates) - display_limit
            if hidden > 0:
                shown += f" (and {hidden} more)"
        else:
            shown = 'No valid dates found in variable data'

        if variable_name is None:
            message = (
                f"Historical variable {variable_id} not found. "
                f"Expected a data point for {expected_date}."
            )
        else:
            message = (
                f"Historical data for {expected_date} not found in variable "
                f"'{variable_name}' ({variable_id}). Available dates: {shown}"
            )
        super().__init__(message)
