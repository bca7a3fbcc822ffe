"""
Ignition Advance Multiplier (IAM) Event Analysis Module

The IAM is the ECU's learned knock scalar: 1.0 means full timing advance, and
it drops as knock is learned. This module reports periods spent below full
advance with a graded severity, how quickly the multiplier recovers, and how
often a drop coincides with logged knock retard. Loggers write IAM either as
a fraction or a percentage; both are accepted.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine, percent_time_where
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'low_threshold': 1.0,         # anything below full advance
    'moderate_threshold': 0.9,
    'severe_threshold': 0.75,
    'critical_threshold': 0.5,
    'run_gap': 0.5,
    'min_duration': None,
    'coalesce_window': 2.0,
}

ERROR_MESSAGE = 'Required ignition advance multiplier column not found in log file.'


# --- Helper Functions ---

def normalize_iam(value):
    """IAM as a 0..1 fraction; values above 1 are taken as percentages."""
    if value is None:
        return None
    return value / 100.0 if value > 1.0 else value


def classify_iam_severity(iam, p):
    if iam < p['critical_threshold']:
        return 'critical'
    if iam < p['severe_threshold']:
        return 'severe'
    if iam < p['moderate_threshold']:
        return 'moderate'
    return 'mild'


def _recovery_rate(samples):
    """Mean rate of IAM increase, in fraction per second, over rising steps."""
    rates = []
    for previous, current in zip(samples, samples[1:]):
        dt = current.time - previous.time
        rise = current.metric - previous.metric
        if dt > 0 and rise > 0:
            rates.append(rise / dt)
    return float(np.mean(rates)) if rates else 0.0


def build_iam_config(params=None):
    p = {**DEFAULT_PARAMS, **(params or {})}

    def classify(iam, row):
        if iam < p['low_threshold']:
            return 'low_iam', True
        return 'normal', False

    def severity_label(sample):
        if sample.classification != 'low_iam':
            return 'normal'
        return classify_iam_severity(sample.metric, p)

    def summarize(samples, dataset):
        if not samples:
            return {'current_iam': 0.0, 'min_iam': 0.0, 'avg_iam': 0.0,
                    'recovery_rate': 0.0, 'time_low_iam_percent': 0.0}
        values = np.array([s.metric for s in samples])
        return {
            'current_iam': float(values[-1]),
            'min_iam': float(values.min()),
            'avg_iam': float(values.mean()),
            'recovery_rate': _recovery_rate(samples),
            'time_low_iam_percent': percent_time_where(
                samples, lambda s: s.metric < p['low_threshold'], dataset.time_range),
        }

    return DomainConfig(
        name='IAM',
        required_fields=('iam',),
        metric=lambda row: normalize_iam(row.iam),
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'knock_retard'),
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_key=lambda s: -s.metric,
        severity_label=severity_label,
        in_target=lambda s: s.metric >= p['low_threshold'],
        summarize=summarize,
        group_details=lambda group: {'iam': group.max_metric,
                                     'knock_retard': group.representative.context['knock_retard']},
    )


def _has_knock(group):
    return any(s.context['knock_retard'] < 0 for e in group.events for s in e.samples)


# --- Main Orchestrator Function ---

def run_iam_analysis(dataset, store=None, params=None):
    """
    Main orchestrator for IAM drop detection.

    Returns:
        dict: Engine results plus per-severity counts, the share of drops that
        coincide with knock retard ('knock_correlation', percent) and a
        'results_iam' DataFrame.
    """
    engine = EventDetectionEngine(dataset, build_iam_config(params))
    results = engine.analyze()
    stats = results['statistics']
    groups = results['event_groups']
    stats['low_iam_events'] = len(groups)
    for severity in ('mild', 'moderate', 'severe', 'critical'):
        stats[f'{severity}_events'] = sum(1 for g in groups if g.severity == severity)
    stats['knock_correlation'] = sum(1 for g in groups if _has_knock(g)) / len(groups) * 100 if groups else 0.0
    results['results_iam'] = groups_to_dataframe(groups, 'iam')
    return results
