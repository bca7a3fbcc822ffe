"""
Engine Coolant Temperature (ECT) Event Analysis Module

Reports periods where coolant temperature reached the high-speed radiator fan
switch point. The switch point is read from the tune's fan_temp table when a
tune is loaded, otherwise the stock value is used.
"""

import numpy as np

from events import DomainConfig, EventDetectionEngine, percent_time_where
from tuning_loader import DEFAULT_FAN_TEMPERATURES
from utils import groups_to_dataframe

DEFAULT_PARAMS = {
    'min_valid_temp': 0.0,
    'run_gap': 0.5,
    'min_duration': None,
    'coalesce_window': 2.0,
}

ERROR_MESSAGE = 'Required coolant temperature column not found in log file.'


def build_coolant_config(params=None, fan_temperatures=None):
    p = {**DEFAULT_PARAMS, **(params or {})}
    fans = {**DEFAULT_FAN_TEMPERATURES, **(fan_temperatures or {})}
    high_on = fans['high_speed_on']
    low_on = fans['low_speed_on']

    def classify(temp, row):
        if temp >= high_on:
            return 'high_temp', True
        return 'normal', False

    def summarize(samples, dataset):
        if not samples:
            return {'min_temp': 0.0, 'max_temp': 0.0, 'avg_temp': 0.0,
                    'time_above_high_fan_percent': 0.0, 'time_above_low_fan_percent': 0.0,
                    'fan_thresholds': fans}
        temps = np.array([s.metric for s in samples])
        return {
            'min_temp': float(temps.min()),
            'max_temp': float(temps.max()),
            'avg_temp': float(temps.mean()),
            'time_above_high_fan_percent': percent_time_where(
                samples, lambda s: s.metric >= high_on, dataset.time_range),
            'time_above_low_fan_percent': percent_time_where(
                samples, lambda s: s.metric >= low_on, dataset.time_range),
            'fan_thresholds': fans,
        }

    return DomainConfig(
        name='Coolant',
        required_fields=('coolant_temp',),
        metric=lambda row: row.coolant_temp,
        classify=classify,
        error_message=ERROR_MESSAGE,
        context_fields=('rpm', 'throttle', 'load', 'vehicle_speed'),
        regime=lambda row: row.coolant_temp is not None and row.coolant_temp >= p['min_valid_temp'],
        run_gap=p['run_gap'],
        min_duration=p['min_duration'],
        coalesce_window=p['coalesce_window'],
        severity_key=lambda s: s.metric,
        severity_label=lambda s: 'critical' if s.classification == 'high_temp' else 'normal',
        in_target=lambda s: s.metric < high_on,
        summarize=summarize,
        group_details=lambda group: {'max_temp': group.max_metric, 'fan_threshold': high_on},
    )


def run_coolant_analysis(dataset, store=None, params=None):
    """Finds coolant over-temperature events relative to the high-speed fan switch point."""
    fan_temperatures = store.get_fan_temperatures() if store is not None and store.is_loaded() else None
    engine = EventDetectionEngine(dataset, build_coolant_config(params, fan_temperatures))
    results = engine.analyze()
    counts = results['statistics']['event_counts']
    results['statistics']['high_temp_events'] = counts.get('high_temp', 0)
    results['results_coolant'] = groups_to_dataframe(results['event_groups'], 'coolant_temp')
    return results
