# utils.py

import numpy as np
import pandas as pd


def table_to_dataframe(table, row_axis, col_axis, decimals=None):
    """Wraps a 2D table in a DataFrame labelled by its axis breakpoints."""
    table = np.asarray(table, dtype=float)
    if decimals is not None:
        table = np.round(table, decimals)
    xlabels = [str(x) for x in col_axis]
    ylabels = [str(y) for y in row_axis]
    return pd.DataFrame(table, columns=xlabels, index=ylabels)


def format_table_rows(table, decimals=1):
    """Serializes each table row as a comma-separated string, e.g. '12.5, 13.0'."""
    table = np.atleast_2d(np.asarray(table, dtype=float))
    return [', '.join(f"{value:.{decimals}f}" for value in row) for row in table]


def format_array(values, decimals=2):
    """Serializes a 1D array as a single comma-separated string."""
    return ', '.join(f"{value:.{decimals}f}" for value in np.asarray(values, dtype=float).ravel())


def groups_to_dataframe(groups, metric_name='metric'):
    """Flattens a list of EventGroups into one row per group for display."""
    columns = ['time', 'end_time', 'duration', 'type', 'severity', metric_name,
               f'avg_{metric_name}', 'event_count']
    if not groups:
        return pd.DataFrame(columns=columns)

    records = []
    for group in groups:
        record = {
            'time': group.time,
            'end_time': group.end_time,
            'duration': group.duration,
            'type': group.classification,
            'severity': group.severity,
            metric_name: group.max_metric,
            f'avg_{metric_name}': group.avg_metric,
            'event_count': group.event_count,
        }
        for key, value in group.context.items():
            record[f'avg_{key}'] = value
        for key, value in group.details.items():
            record.setdefault(key, value)
        records.append(record)
    return pd.DataFrame(records)
