"""
Log Score Module

Runs every event analysis over one datalog and folds the resulting event
groups into a single, time-ordered list of issues. Each issue carries a
severity and a critical flag so the worst problems in a log can be found at a
glance.
"""

import pandas as pd

from AFR import run_afr_analysis
from BOOST import run_boost_analysis
from ECT import run_coolant_analysis
from IAM import run_iam_analysis
from IAT import run_iat_analysis
from KNK import run_knk_analysis
from LOAD import run_load_limit_analysis
from TRIM import run_ltft_analysis, run_stft_analysis

AFR_CONVERSION_FACTOR = 14.7   # 1 lambda = 14.7 AFR (gasoline)
CRITICAL_BOOST_ERROR = 10.0    # kPa
CRITICAL_AFR_ERROR = 0.1       # lambda

ANALYSES = {
    'knock': run_knk_analysis,
    'boost': run_boost_analysis,
    'afr': run_afr_analysis,
    'stft': run_stft_analysis,
    'ltft': run_ltft_analysis,
    'coolant': run_coolant_analysis,
    'iat': run_iat_analysis,
    'load_limit': run_load_limit_analysis,
    'iam': run_iam_analysis,
}

ISSUE_COLUMNS = ['time', 'source', 'type', 'severity', 'value', 'description', 'rpm', 'throttle', 'critical']


# --- Helper Functions ---

def _signed(value):
    return f"+{value:.2f}" if value > 0 else f"{value:.2f}"


def _knock_issue(group):
    retard = group.max_metric
    label = 'Severe' if group.severity == 'severe' else 'Mild'
    return 'knock', 'high', f"{label} knock detected: {abs(retard):.2f}° retard"


def _boost_issue(group):
    error = group.max_metric
    target = group.details.get('boost_target', 0.0)
    actual = group.details.get('actual_boost', 0.0)
    is_overshoot = group.classification == 'overshoot'
    text = 'overshoot' if is_overshoot else 'undershoot'
    return (group.classification, 'high' if is_overshoot else 'low',
            f"Boost {text}: {abs(error):.2f} kPa error (target: {target:.1f} kPa, actual: {actual:.1f} kPa)")


def _afr_issue(group):
    target_afr = group.details.get('target_lambda', 0.0) * AFR_CONVERSION_FACTOR
    measured_afr = group.details.get('measured_lambda', 0.0) * AFR_CONVERSION_FACTOR
    deviation = group.details.get('max_deviation_percent', 0.0)
    target_text = f"{target_afr:.1f}" if target_afr > 0 else 'N/A'
    measured_text = f"{measured_afr:.1f}" if measured_afr > 0 else 'N/A'
    return (group.classification, group.severity,
            f"AFR {group.classification}: {_signed(deviation)}% deviation "
            f"(target: {target_text} AFR, measured: {measured_text} AFR)")


def _trim_issue_factory(label):
    def trim_issue(group):
        trim = group.max_metric
        is_positive = group.classification == 'positive'
        effect = 'adding fuel, rich condition' if is_positive else 'removing fuel, lean condition'
        return (group.classification, 'high' if is_positive else 'low',
                f"{label} {group.classification}: {_signed(trim)}% ({effect})")
    return trim_issue


def _coolant_issue(group):
    threshold = group.details.get('fan_threshold', 0.0)
    return (group.classification, group.severity,
            f"Coolant temperature {group.max_metric:.1f}°C at or above fan threshold {threshold:.1f}°C")


def _iat_issue(group):
    text = 'high' if group.classification == 'high_temp' else 'low'
    return (group.classification, group.severity, f"Intake air temperature {text}: {group.max_metric:.1f}°C")


def _load_limit_issue(group):
    load = group.details.get('load', 0.0)
    limit = group.details.get('load_limit', 0.0)
    text = 'over limit' if group.classification == 'limit_violation' else 'near limit'
    return (group.classification, group.severity,
            f"Load {text}: {load:.2f} g/rev vs {limit:.2f} g/rev limit ({group.max_metric * 100:.1f}%)")


def _iam_issue(group):
    return ('low_iam', group.severity, f"Ignition advance multiplier dropped to {group.max_metric * 100:.1f}%")


ISSUE_BUILDERS = {
    'knock': _knock_issue,
    'boost': _boost_issue,
    'afr': _afr_issue,
    'stft': _trim_issue_factory('Fuel trim'),
    'ltft': _trim_issue_factory('Long-term fuel trim'),
    'coolant': _coolant_issue,
    'iat': _iat_issue,
    'load_limit': _load_limit_issue,
    'iam': _iam_issue,
}


def is_critical(issue):
    """Critical issues: severe/critical severity, any knock, large boost errors, large lean AFR errors."""
    if issue['severity'] in ('severe', 'critical'):
        return True
    if issue['source'] == 'knock':
        return True
    if issue['source'] == 'boost' and abs(issue['value']) > CRITICAL_BOOST_ERROR:
        return True
    return issue['source'] == 'afr' and issue['severity'] == 'high' and abs(issue['value']) > CRITICAL_AFR_ERROR


# --- Main Functions ---

def run_all_analyses(dataset, store=None, params=None, domains=None):
    """
    Runs the event analyses one after another.

    Args:
        dataset (LogDataset): The loaded datalog.
        store (CalibrationStore, optional): The loaded tune, if any.
        params (dict, optional): Per-domain overrides keyed by domain name.
        domains (iterable, optional): Subset of ANALYSES to run; all by default.

    Returns:
        dict: Analysis results keyed by domain name.
    """
    params = params or {}
    selected = list(domains) if domains is not None else list(ANALYSES)
    unknown = [d for d in selected if d not in ANALYSES]
    if unknown:
        raise ValueError(f"Unknown analysis domains: {', '.join(unknown)}")

    results = {}
    for domain in selected:
        results[domain] = ANALYSES[domain](dataset, store=store, params=params.get(domain))
        print(f" -> {domain}: {results[domain]['status']}")
    return results


def compile_log_issues(results, include_stft=False):
    """
    Flattens analysis results into one issue per event group, sorted by time.
    Failed or missing analyses contribute nothing. STFT is opt-in because the
    long-term trims usually tell the same story with less noise.
    """
    issues = []
    for source, builder in ISSUE_BUILDERS.items():
        if source == 'stft' and not include_stft:
            continue
        result = results.get(source)
        if not result or result.get('status') != 'Success':
            continue
        for group in result['event_groups']:
            issue_type, severity, description = builder(group)
            issue = {
                'time': group.time,
                'source': source,
                'type': issue_type,
                'severity': severity,
                'value': group.max_metric,
                'description': description,
                'rpm': group.context.get('rpm', 0.0),
                'throttle': group.context.get('throttle', 0.0),
                'duration': group.duration,
            }
            issue['critical'] = is_critical(issue)
            issues.append(issue)
    issues.sort(key=lambda issue: issue['time'])
    return issues


def summarize_issues(issues):
    by_source = {}
    by_severity = {}
    for issue in issues:
        by_source[issue['source']] = by_source.get(issue['source'], 0) + 1
        by_severity[issue['severity']] = by_severity.get(issue['severity'], 0) + 1
    return {
        'total_issues': len(issues),
        'critical_issues': sum(1 for issue in issues if issue['critical']),
        'by_source': by_source,
        'by_severity': by_severity,
    }


def issues_to_dataframe(issues):
    if not issues:
        return pd.DataFrame(columns=ISSUE_COLUMNS + ['duration'])
    return pd.DataFrame(issues)
