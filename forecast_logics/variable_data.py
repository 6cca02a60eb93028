import logging
from collections.abc import Mapping

import pandas as pd

from forecast_logics.data_model import month_start

logger = logging.getLogger(__name__)


# ── Month arithmetic ───────────────────────────────────


def normalize_to_first_of_month(value):
    """Return the first day of the month containing value, as a date."""
    return month_start(value)


def add_months(value, months):
    """Shift a date by a whole number of months. The result is always a first-of-month date."""
    period = pd.Period(month_start(value), freq='M') + int(months)
    return period.to_timestamp().date()


def months_between(start, end):
    """
    Inclusive number of calendar months from start to end.

    Jan 15 -> Mar 2 counts as 3 (Jan, Feb, Mar). Returns 0 or less when end is
    in an earlier month than start.
    """
    start_period = pd.Period(month_start(start), freq='M')
    end_period = pd.Period(month_start(end), freq='M')
    return (end_period - start_period).n + 1


# ── Lookup ─────────────────────────────────────────────


def find_variable(variable_id, variables):
    """Find a variable by id in a list of variables or an id -> variable mapping."""
    if not variable_id:
        return None
    if isinstance(variables, Mapping):
        return variables.get(variable_id)
    for variable in variables:
        if variable.id == variable_id:
            return variable
    return None


def value_for_month(variable_id, target_date, variables):
    """
    Return the value a variable recorded for the month of target_date.

    Only an exact first-of-month match counts: no interpolation and no nearest
    neighbour. A variable that does not exist is treated as having no data.

    Args:
        variable_id: id of the variable to read.
        target_date: any date within the wanted month.
        variables: list of Variable or mapping of id -> Variable.

    Returns:
        The float value, or None if the variable or the data point is missing.
    """
    variable = find_variable(variable_id, variables)
    if variable is None:
        logger.debug(f"[LOOKUP] Variable {variable_id} not found")
        return None

    value = variable.series.get(pd.Timestamp(month_start(target_date)))
    if value is None or pd.isna(value):
        return None
    return float(value)


def value_with_offset(variable_id, target_date, offset_months, variables):
    """
    Like value_for_month, but first shifts target_date by offset_months.

    A positive offset reads a later month, a negative offset an earlier one:
    offset -1 on 2024-03 reads 2024-02.
    """
    shifted = add_months(target_date, offset_months or 0)
    return value_for_month(variable_id, shifted, variables)


def available_dates(variable):
    """Sorted ISO dates (YYYY-MM-DD) of every point recorded for a variable."""
    if variable is None:
        return []
    return sorted({month_start(p.date).isoformat() for p in variable.time_series})
