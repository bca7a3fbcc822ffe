"""
Air/Fuel Ratio (AFR) Event Analysis Module

This module contains pure, non-UI functions to find periods of open-loop
(power enrichment) operation where the measured lambda strayed from the
commanded target. Closed-loop rows are ignored: the oxygen sensor feedback is
already trimming fuel there, and the trims are analysed separately.
"""

from events import DomainConfig, EventDetectionEngine
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'lean_threshold': 0.03,        # lambda above target
    'rich_threshold': -0.03,       # lambda below target
    'tolerance': 0.015,            # in-target band
    'open_loop_threshold': 0.85,   # only analyse targets richer than this
    'run_gap': 0.5,
    'min_duration': 0.1,
    'coalesce_window': 1.0,
    'low_severity_deviation_pct': 5.0,
}

ERROR_MESSAGE = 'Required AFR columns not found in log file. Need a lambda target and a measured lambda channel.'


# --- Helper Functions ---

def _deviation_percent(error, target):
    return error / target * 100 if target else 0.0


def build_afr_config(params=None):
    """Creates the AFR DomainConfig, applying any overrides on top of DEFAULT_PARAMS."""
    p = {**DEFAULT_PARAMS, **(params or {})}

    def regime(row):
        return (row.lambda_target is not None and row.lambda_measured is not None
                and 0 < row.lambda_target < p['open_loop_threshold']
                and row.lambda_measured > 0)

    def metric(row):
        return row.lambda_measured - row.lambda_target

    def classify(error, row):
        if error > p['lean_threshold']:
            classification = 'lean'
        elif error < p['rich_threshold']:
            classification = 'rich'
        else:
            classification = 'normal'
        significant = classification != 'normal' or abs(error) > p['tolerance']
        return classification, significant

    def severity_label(sample):
        if sample.classification != 'lean':
            return 'low'
        deviation = _deviation_percent(sample.metric, sample.context.get('lambda_target', 0.0))
        return 'low' if abs(deviation) <= p['low_severity_deviation_pct'] else 'high'

    def group_details(group):
        rep = group.representative
        deviations = [_deviation_percent(e.representative.metric, e.representative.context['lambda_target'])
                      for e in group.events]
        return {
            'max_afr_error': group.max_metric,
            'target_lambda': rep.context['lambda_target'],
            'measured_lambda': rep.context['lambda_measured'],
            'max_deviation_percent': _deviation_percent(rep.metric, rep.context['lambda_target']),
            'avg_deviation_percent': sum(deviations) / len(deviations),
        }

    return DomainConfig(
        name='AFR',
        required_fields=('lambda_target', 'lambda_measured'),
        metric=metric,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'lambda_target', 'lambda_measured'),
        regime=regime,
        run_gap=p['run_gap'],
        split_on_classification=False,
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_label=severity_label,
        in_target=lambda s: abs(s.metric) <= p['tolerance'],
        group_details=group_details,
    )


# --- Main Orchestrator Function ---

def run_afr_analysis(dataset, store=None, params=None):
    """
    Finds lean and rich excursions from the power enrichment lambda target.

    Args:
        dataset (LogDataset): The loaded datalog.
        store (CalibrationStore, optional): Unused; accepted so every domain
            orchestrator shares one signature.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: Engine results plus 'results_afr', a DataFrame of event groups.
    """
    engine = EventDetectionEngine(dataset, build_afr_config(params))
    results = engine.analyze()
    results['results_afr'] = groups_to_dataframe(results['event_groups'], 'afr_error')
    return results
