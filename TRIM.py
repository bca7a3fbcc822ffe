"""
Fuel Trim (STFT / LTFT) Event Analysis Module

Flags periods where closed-loop feedback had to pull or add more fuel than a
healthy base fuel table should need. Short- and long-term trims share one
configuration and differ only in the channel read.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'positive_threshold': 10.0,   # % fuel added
    'negative_threshold': -10.0,  # % fuel removed
    'run_gap': 0.5,
    'min_duration': None,
    'coalesce_window': 0.5,
}

TRIM_CHANNELS = {
    'STFT': ('stft', 'Required short term fuel trim column not found in log file.'),
    'LTFT': ('ltft', 'Required long term fuel trim column not found in log file.'),
}


# --- Helper Functions ---

def _summarize(samples, dataset):
    if not samples:
        return {'avg_trim': 0.0, 'avg_trim_abs': 0.0, 'max_positive': 0.0, 'max_negative': 0.0}
    trims = np.array([s.metric for s in samples])
    return {
        'avg_trim': float(trims.mean()),
        'avg_trim_abs': float(np.abs(trims).mean()),
        'max_positive': float(max(trims.max(), 0.0)),
        'max_negative': float(min(trims.min(), 0.0)),
    }


def build_trim_config(kind='STFT', params=None):
    """Creates the DomainConfig for 'STFT' or 'LTFT'."""
    if kind not in TRIM_CHANNELS:
        raise ValueError(f"Unknown fuel trim kind '{kind}'. Expected one of {list(TRIM_CHANNELS)}.")
    field, error_message = TRIM_CHANNELS[kind]
    p = {**DEFAULT_PARAMS, **(params or {})}

    def metric(row):
        return getattr(row, field)

    def classify(trim, row):
        if trim > p['positive_threshold']:
            return 'positive', True
        if trim < p['negative_threshold']:
            return 'negative', True
        return 'normal', False

    return DomainConfig(
        name=kind,
        required_fields=(field,),
        metric=metric,
        classify=classify,
        error_message=error_message,
        context_fields=('rpm', 'throttle', 'load', 'lambda_measured'),
        regime=lambda row: getattr(row, field) is not None,
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_label=lambda s: {'positive': 'high', 'negative': 'low'}.get(s.classification, 'normal'),
        in_target=lambda s: p['negative_threshold'] <= s.metric <= p['positive_threshold'],
        summarize=_summarize,
        group_details=lambda group: {'max_trim': group.max_metric},
    )


# --- Main Orchestrator Functions ---

def _run_trim_analysis(kind, dataset, params):
    engine = EventDetectionEngine(dataset, build_trim_config(kind, params))
    results = engine.analyze()
    counts = results['statistics']['event_counts']
    results['statistics']['positive_events'] = counts.get('positive', 0)
    results['statistics']['negative_events'] = counts.get('negative', 0)
    results[f'results_{kind.lower()}'] = groups_to_dataframe(results['event_groups'], 'trim')
    return results


def run_stft_analysis(dataset, store=None, params=None):
    """Finds short term fuel trim excursions beyond the abnormal threshold."""
    return _run_trim_analysis('STFT', dataset, params)


def run_ltft_analysis(dataset, store=None, params=None):
    """Finds long term fuel trim excursions beyond the abnormal threshold."""
    return _run_trim_analysis('LTFT', dataset, params)
