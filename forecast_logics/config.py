# forecast_logics/config.py

import os

# --- General ---
LOG_LEVEL = os.getenv('FORECAST_LOG_LEVEL', 'INFO')

# --- Calculation ---
# 1 (or unset) keeps evaluation on the calling thread
MAX_WORKERS = int(os.getenv('FORECAST_MAX_WORKERS', '1'))

# How many dates a missing-historical-data error lists before "(and N more)"
AVAILABLE_DATES_DISPLAY_LIMIT = int(os.getenv('FORECAST_DATES_DISPLAY_LIMIT', '10'))

# --- File loading / export ---
# Tried in order when a CSV fails to decode
CSV_ENCODINGS = ['utf-8', 'utf-8-sig', 'latin-1', 'cp1252', 'iso-8859-1']

EXCEL_ENGINE = os.getenv('FORECAST_EXCEL_ENGINE', 'xlsxwriter')

# Excel refuses sheet names longer than this
SHEET_NAME_LIMIT = 31

# Long-format column names used when reading variables and writing results
VARIABLE_ID_COL = 'variable_id'
DATE_COL = 'date'
VALUE_COL = 'value'
