"""
Boost Control Event Analysis Module

This module contains pure, non-UI functions to find sustained boost overshoot
and undershoot. Only rows where the manifold is actually under boost are
considered, and part-throttle deviations are ignored because the boost
controller is not expected to track target there.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'overshoot_threshold': 5.0,       # kPa above target
    'undershoot_threshold': -5.0,     # kPa below target
    'tolerance': 10.0,                # in-target band, kPa
    'min_boost_pressure': 100.0,      # kPa absolute
    'overshoot_min_throttle': 30.0,   # overshoot below this throttle is ignored
    'undershoot_min_throttle': 50.0,  # undershoot at or below this throttle is ignored
    'run_gap': 0.5,
    'min_duration': {'overshoot': 0.25, 'undershoot': 0.5},
    'coalesce_window': 0.5,
}

ERROR_MESSAGE = 'Required boost columns not found in log file. Need a manifold pressure channel.'


# --- Helper Functions ---

def _make_target_lookup(dataset, store):
    """Chooses where the boost target comes from: the log, the tune, or nothing."""
    if not dataset.missing_channels(('boost_target',)):
        return (lambda row: row.boost_target or 0.0), None
    if store is not None and store.is_loaded() and store.get_table('boost_target') is not None:
        return (lambda row: store.get_boost_target(row.rpm or 0.0, row.throttle or 0.0),
                "Boost target not logged. Using the tune's boost_target table instead.")
    return (lambda row: 0.0), "Boost target not logged and no tune loaded. Treating target as 0 kPa."


def _summarize(samples, dataset):
    if not samples:
        return {'avg_boost_error': 0.0, 'max_overshoot': 0.0, 'max_undershoot': 0.0,
                'max_boost': 0.0, 'avg_wastegate_duty': 0.0}
    errors = np.array([s.metric for s in samples])
    duty = [s.context['wastegate_duty'] for s in samples]
    return {
        'avg_boost_error': float(errors.mean()),
        'max_overshoot': float(max(errors.max(), 0.0)),
        'max_undershoot': float(min(errors.min(), 0.0)),
        'max_boost': float(max(s.context['manifold_pressure'] for s in samples)),
        'avg_wastegate_duty': float(np.mean(duty)),
    }


def build_boost_config(params=None, target_lookup=None):
    """Creates the boost DomainConfig. target_lookup(row) supplies the target in kPa."""
    p = {**DEFAULT_PARAMS, **(params or {})}
    if target_lookup is None:
        def target_lookup(row):
            return row.boost_target or 0.0

    def regime(row):
        return row.manifold_pressure is not None and row.manifold_pressure >= p['min_boost_pressure']

    def metric(row):
        return row.manifold_pressure - target_lookup(row)

    def classify(error, row):
        throttle = row.throttle or 0.0
        if error > p['overshoot_threshold']:
            if throttle < p['overshoot_min_throttle']:
                return 'normal', False
            return 'overshoot', True
        if error < p['undershoot_threshold']:
            if throttle <= p['undershoot_min_throttle']:
                return 'normal', False
            return 'undershoot', True
        return 'normal', abs(error) > p['tolerance']

    def group_details(group):
        rep = group.representative
        return {
            'boost_error': group.max_metric,
            'boost_target': rep.context['manifold_pressure'] - rep.metric,
            'actual_boost': rep.context['manifold_pressure'],
            'wastegate_duty': rep.context['wastegate_duty'],
        }

    return DomainConfig(
        name='Boost',
        required_fields=('manifold_pressure',),
        metric=metric,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'manifold_pressure', 'wastegate_duty'),
        regime=regime,
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_label=lambda s: {'overshoot': 'high', 'undershoot': 'low'}.get(s.classification, 'normal'),
        in_target=lambda s: abs(s.metric) <= p['tolerance'],
        summarize=_summarize,
        group_details=group_details,
    )


# --- Main Orchestrator Function ---

def run_boost_analysis(dataset, store=None, params=None):
    """
    Finds sustained boost overshoot and undershoot events.

    When the log has no boost target channel, the target is read from the
    tune's boost_target table (RPM x throttle) if a tune is loaded.
    """
    target_lookup, warning = _make_target_lookup(dataset, store)
    engine = EventDetectionEngine(dataset, build_boost_config(params, target_lookup))
    results = engine.analyze()
    if warning and results['status'] == 'Success':
        results['warnings'].append(warning)
    results['results_boost'] = groups_to_dataframe(results['event_groups'], 'boost_error')
    return results
