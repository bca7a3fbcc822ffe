"""
Load Limit Event Analysis Module

This module contains pure, non-UI functions that compare logged engine load
against the tune's RPM-based load ceiling (load_max). Load above the ceiling
is reported as a limit violation; load within a few percent of it is
reported as running near the limit. Without a loaded tune the stock ceiling
curve is used.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine, percent_time_where
from tuning_loader import DEFAULT_LOAD_LIMIT_RPM, DEFAULT_LOAD_LIMITS, interpolate_1d
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'near_limit_ratio': 0.95,     # load / limit
    'severe_ratio': 1.10,
    'min_rpm': 500.0,
    'run_gap': 0.5,
    'min_duration': 0.1,          # seconds
    'coalesce_window': 1.0,
}

ERROR_MESSAGE = 'Required load or engine speed column not found in log file.'


# --- Helper Functions ---

def _make_limit_lookup(store):
    if store is not None and store.is_loaded():
        return store.get_load_limit
    return lambda rpm: interpolate_1d(DEFAULT_LOAD_LIMITS, DEFAULT_LOAD_LIMIT_RPM, rpm)


def build_load_limit_config(params=None, limit_lookup=None):
    p = {**DEFAULT_PARAMS, **(params or {})}
    limit_for = limit_lookup or _make_limit_lookup(None)

    def metric(row):
        limit = limit_for(row.rpm)
        if not limit or limit <= 0:
            return None
        return row.load / limit

    def classify(ratio, row):
        if ratio > 1.0:
            return 'limit_violation', True
        if ratio >= p['near_limit_ratio']:
            return 'near_limit', True
        return 'normal', False

    def severity_label(sample):
        if sample.classification == 'limit_violation':
            return 'severe' if sample.metric >= p['severe_ratio'] else 'moderate'
        if sample.classification == 'near_limit':
            return 'mild'
        return 'normal'

    def summarize(samples, dataset):
        if not samples:
            return {'max_load': 0.0, 'max_load_ratio': 0.0, 'time_near_limit_percent': 0.0,
                    'time_over_limit_percent': 0.0}
        loads = np.array([s.context['load'] for s in samples])
        ratios = np.array([s.metric for s in samples])
        return {
            'max_load': float(loads.max()),
            'max_load_ratio': float(ratios.max()),
            'time_near_limit_percent': percent_time_where(
                samples, lambda s: s.metric >= p['near_limit_ratio'], dataset.time_range),
            'time_over_limit_percent': percent_time_where(
                samples, lambda s: s.metric > 1.0, dataset.time_range),
        }

    def group_details(group):
        rep = group.representative
        return {
            'load': rep.context['load'],
            'load_limit': float(limit_for(rep.context['rpm'])),
            'load_ratio': rep.metric,
        }

    return DomainConfig(
        name='Load Limit',
        required_fields=('load', 'rpm'),
        metric=metric,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'manifold_pressure'),
        regime=lambda row: row.rpm is not None and row.load is not None and row.rpm >= p['min_rpm'],
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_key=lambda s: s.metric,
        severity_label=severity_label,
        in_target=lambda s: s.metric < p['near_limit_ratio'],
        summarize=summarize,
        group_details=group_details,
    )


# --- Main Orchestrator Function ---

def run_load_limit_analysis(dataset, store=None, params=None):
    """
    Main orchestrator for load limit event detection.

    Args:
        dataset (LogDataset): The loaded datalog.
        store (CalibrationStore, optional): Supplies the load_max ceiling by RPM.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: Engine results plus violation counts and a 'results_load' DataFrame.
    """
    engine = EventDetectionEngine(dataset, build_load_limit_config(params, _make_limit_lookup(store)))
    results = engine.analyze()
    counts = results['statistics']['event_counts']
    results['statistics']['violation_events'] = counts.get('limit_violation', 0)
    results['statistics']['near_limit_events'] = counts.get('near_limit', 0)
    if store is None or not store.is_loaded():
        results['warnings'].append('No tune loaded. Load limits use the stock load_max curve.')
    results['results_load'] = groups_to_dataframe(results['event_groups'], 'load_ratio')
    return results
