"""
Knock (KNK) Event Analysis Module

This module contains pure, non-UI functions to find knock retard events in
engine logs. Any negative knock retard is treated as knock; retard deeper
than the severe threshold is flagged as severe. Events are compared against
the tune's maximum knock retard so that logs hitting the limit stand out.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine, percent_time_where
from tuning_loader import DEFAULT_KNOCK_PARAMETERS
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'knock_threshold': -0.0001,   # degrees; anything below counts as knock
    'severe_threshold': -4.0,     # degrees
    'run_gap': 0.1,
    'min_duration': None,
    'coalesce_window': 0.1,
}

ERROR_MESSAGE = 'Required knock retard column not found in log file.'


# --- Helper Functions ---

def _summarize_factory(p):
    def summarize(samples, dataset):
        knock = [s for s in samples if s.metric < p['knock_threshold']]
        if not knock:
            return {'max_knock_retard': 0.0, 'max_knock_retard_abs': 0.0, 'avg_knock_retard': 0.0,
                    'time_with_knock_percent': 0.0, 'knock_samples': 0, 'rpm_range': (0.0, 0.0)}
        retard = np.array([s.metric for s in knock])
        rpm = [s.context['rpm'] for s in knock]
        return {
            'max_knock_retard': float(retard.min()),
            'max_knock_retard_abs': float(abs(retard.min())),
            'avg_knock_retard': float(retard.mean()),
            'time_with_knock_percent': percent_time_where(
                samples, lambda s: s.metric < p['knock_threshold'], dataset.time_range),
            'knock_samples': len(knock),
            'rpm_range': (float(min(rpm)), float(max(rpm))),
        }
    return summarize


def build_knock_config(params=None):
    p = {**DEFAULT_PARAMS, **(params or {})}

    def classify(retard, row):
        if retard < p['knock_threshold']:
            return 'knock', True
        return 'normal', False

    def severity_label(sample):
        if sample.classification != 'knock':
            return 'normal'
        return 'severe' if sample.metric < p['severe_threshold'] else 'mild'

    return DomainConfig(
        name='Knock',
        required_fields=('knock_retard',),
        metric=lambda row: row.knock_retard,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'lambda_measured', 'manifold_pressure',
                        'coolant_temp', 'intake_temp'),
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_key=lambda s: -s.metric,
        severity_label=severity_label,
        in_target=lambda s: s.classification == 'normal',
        summarize=_summarize_factory(p),
        group_details=lambda group: {'knock_retard': group.max_metric},
    )


# --- Main Orchestrator Function ---

def run_knk_analysis(dataset, store=None, params=None):
    """
    Main orchestrator for knock event detection. A pure computational function.

    Args:
        dataset (LogDataset): The loaded datalog.
        store (CalibrationStore, optional): Supplies the tune's knock retard limit.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: Engine results plus severity counts and a 'results_knk' DataFrame.
    """
    engine = EventDetectionEngine(dataset, build_knock_config(params))
    results = engine.analyze()
    stats = results['statistics']
    groups = results['event_groups']
    stats['severe_events'] = sum(1 for g in groups if g.severity == 'severe')
    stats['mild_events'] = sum(1 for g in groups if g.severity == 'mild')

    knock_parameters = store.get_knock_parameters() if store is not None and store.is_loaded() \
        else dict(DEFAULT_KNOCK_PARAMETERS)
    stats['retard_limit'] = knock_parameters['retard_max']
    stats['events_at_retard_limit'] = sum(1 for g in groups if g.max_metric <= knock_parameters['retard_max'])
    if stats['events_at_retard_limit']:
        results['warnings'].append(
            f"{stats['events_at_retard_limit']} knock events reached the tune's maximum retard "
            f"of {knock_parameters['retard_max']:.1f} degrees.")

    results['results_knk'] = groups_to_dataframe(groups, 'knock_retard')
    return results
