"""
Intake Air Temperature (IAT) Event Analysis Module

Classifies intake air temperature into hot and cold excursions with a graded
severity. The temperature bands follow the breakpoints of the tune's boost
IAT compensation axis when one is loaded, since those are the temperatures at
which the ECU starts changing boost and spark.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine, percent_time_where
from tuning_loader import DEFAULT_IAT_THRESHOLDS
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'min_valid_temp': -50.0,
    'max_valid_temp': 200.0,
    'run_gap': 0.5,
    'min_duration': None,
    'coalesce_window': 2.0,
}

ERROR_MESSAGE = 'Required intake air temperature column not found in log file.'


# --- Helper Functions ---

def classify_iat(iat, thresholds):
    """Returns (classification, severity) for a single temperature reading."""
    if iat >= thresholds['critical']:
        return 'high_temp', 'critical'
    if iat >= thresholds['high']:
        return 'high_temp', 'severe'
    if iat <= thresholds['very_low']:
        return 'low_temp', 'severe'
    if iat <= thresholds['low']:
        return 'low_temp', 'moderate'
    if iat < thresholds['normal_min']:
        return 'low_temp', 'mild'
    if iat > thresholds['normal_max']:
        return 'high_temp', 'mild'
    return 'normal', 'normal'


def build_iat_config(params=None, thresholds=None):
    p = {**DEFAULT_PARAMS, **(params or {})}
    t = {**DEFAULT_IAT_THRESHOLDS, **(thresholds or {})}

    def classify(iat, row):
        classification, _severity = classify_iat(iat, t)
        return classification, classification != 'normal'

    def severity_key(sample):
        return -sample.metric if sample.classification == 'low_temp' else sample.metric

    def summarize(samples, dataset):
        if not samples:
            return {'min_iat': 0.0, 'max_iat': 0.0, 'avg_iat': 0.0,
                    'time_above_high_percent': 0.0, 'time_below_low_percent': 0.0,
                    'critical_samples': 0, 'thresholds': t}
        temps = np.array([s.metric for s in samples])
        return {
            'min_iat': float(temps.min()),
            'max_iat': float(temps.max()),
            'avg_iat': float(temps.mean()),
            'time_above_high_percent': percent_time_where(
                samples, lambda s: s.metric >= t['high'], dataset.time_range),
            'time_below_low_percent': percent_time_where(
                samples, lambda s: s.metric <= t['low'], dataset.time_range),
            'critical_samples': int((temps >= t['critical']).sum()),
            'thresholds': t,
        }

    return DomainConfig(
        name='IAT',
        required_fields=('intake_temp',),
        metric=lambda row: row.intake_temp,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'vehicle_speed', 'manifold_pressure'),
        regime=lambda row: (row.intake_temp is not None
                            and p['min_valid_temp'] <= row.intake_temp <= p['max_valid_temp']),
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_key=severity_key,
        severity_label=lambda s: classify_iat(s.metric, t)[1],
        in_target=lambda s: s.classification == 'normal',
        summarize=summarize,
        group_details=lambda group: {'peak_iat': group.max_metric},
    )


# --- Main Orchestrator Function ---

def run_iat_analysis(dataset, store=None, params=None):
    """Finds hot and cold intake air temperature excursions."""
    thresholds = store.get_iat_thresholds() if store is not None and store.is_loaded() else None
    engine = EventDetectionEngine(dataset, build_iat_config(params, thresholds))
    results = engine.analyze()
    counts = results['statistics']['event_counts']
    results['statistics']['high_temp_events'] = counts.get('high_temp', 0)
    results['statistics']['low_temp_events'] = counts.get('low_temp', 0)
    if thresholds is not None and not thresholds.get('compensation_enabled', True):
        results['warnings'].append("Boost IAT compensation is disabled in this tune.")
    results['results_iat'] = groups_to_dataframe(results['event_groups'], 'iat')
    return results
