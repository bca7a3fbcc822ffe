import pytest

from events import EventGroup, Sample
from log_score import (compile_log_issues, is_critical, issues_to_dataframe, run_all_analyses,
                       summarize_issues)


def _group(time, classification, severity, value, details=None):
    sample = Sample(time, value, classification, True, {'rpm': 3000.0, 'throttle': 80.0})
    return EventGroup(
        time=time, end_time=time, duration=0.05, classification=classification, severity=severity,
        max_metric=value, avg_metric=value, avg_metric_abs=abs(value), representative=sample,
        context={'rpm': 3000.0, 'throttle': 80.0}, event_count=1, sample_count=1,
        details=details or {},
    )


def _result(*groups):
    return {'status': 'Success', 'event_groups': list(groups)}


class TestCompileIssues:

    def test_issues_are_sorted_and_described(self):
        results = {
            'knock': _result(_group(2.0, 'knock', 'mild', -1.5)),
            'boost': _result(_group(1.0, 'overshoot', 'high', 12.0,
                                    {'boost_target': 150.0, 'actual_boost': 162.0})),
            'afr': _result(_group(3.0, 'lean', 'high', 0.1,
                                  {'target_lambda': 0.8, 'measured_lambda': 0.9, 'max_deviation_percent': 12.5})),
        }
        issues = compile_log_issues(results)
        assert [issue['source'] for issue in issues] == ['boost', 'knock', 'afr']
        assert issues[0]['description'] == \
            'Boost overshoot: 12.00 kPa error (target: 150.0 kPa, actual: 162.0 kPa)'
        assert issues[1]['description'] == 'Mild knock detected: 1.50° retard'
        assert issues[1]['severity'] == 'high'
        assert 'target: 11.8 AFR, measured: 13.2 AFR' in issues[2]['description']
        assert issues[2]['rpm'] == 3000.0

    def test_stft_is_opt_in(self):
        results = {'stft': _result(_group(0.0, 'positive', 'high', 12.0))}
        assert compile_log_issues(results) == []
        issues = compile_log_issues(results, include_stft=True)
        assert issues[0]['description'] == 'Fuel trim positive: +12.00% (adding fuel, rich condition)'

    def test_failed_analyses_are_skipped(self):
        results = {'knock': {'status': 'Failure', 'event_groups': []}}
        assert compile_log_issues(results) == []

    def test_load_limit_description(self):
        results = {'load_limit': _result(
            _group(1.0, 'limit_violation', 'severe', 1.2, {'load': 1.8, 'load_limit': 1.5, 'load_ratio': 1.2}),
            _group(4.0, 'near_limit', 'mild', 0.97, {'load': 1.46, 'load_limit': 1.5, 'load_ratio': 0.97}),
        )}
        issues = compile_log_issues(results)
        assert issues[0]['description'] == 'Load over limit: 1.80 g/rev vs 1.50 g/rev limit (120.0%)'
        assert issues[0]['critical']
        assert issues[1]['description'] == 'Load near limit: 1.46 g/rev vs 1.50 g/rev limit (97.0%)'
        assert not issues[1]['critical']

    def test_iam_description(self):
        results = {'iam': _result(_group(2.0, 'low_iam', 'moderate', 0.875, {'iam': 0.875}))}
        issue = compile_log_issues(results)[0]
        assert issue['type'] == 'low_iam'
        assert issue['description'] == 'Ignition advance multiplier dropped to 87.5%'
        assert not issue['critical']

    def test_ltft_severity(self):
        results = {'ltft': _result(_group(0.0, 'positive', 'high', 11.0), _group(5.0, 'negative', 'low', -11.0))}
        assert [issue['severity'] for issue in compile_log_issues(results)] == ['high', 'low']


class TestCritical:

    @pytest.mark.parametrize('issue, expected', [
        ({'source': 'knock', 'severity': 'high', 'value': -0.5}, True),
        ({'source': 'iat', 'severity': 'critical', 'value': 110.0}, True),
        ({'source': 'iat', 'severity': 'mild', 'value': 65.0}, False),
        ({'source': 'boost', 'severity': 'low', 'value': -12.0}, True),
        ({'source': 'boost', 'severity': 'high', 'value': 8.0}, False),
        ({'source': 'afr', 'severity': 'high', 'value': 0.12}, True),
        ({'source': 'afr', 'severity': 'low', 'value': 0.12}, False),
        ({'source': 'afr', 'severity': 'high', 'value': 0.05}, False),
    ])
    def test_rules(self, issue, expected):
        assert is_critical(issue) is expected


def test_summarize_issues():
    issues = [
        {'source': 'knock', 'severity': 'high', 'critical': True},
        {'source': 'knock', 'severity': 'high', 'critical': True},
        {'source': 'boost', 'severity': 'low', 'critical': False},
    ]
    summary = summarize_issues(issues)
    assert summary['total_issues'] == 3
    assert summary['critical_issues'] == 2
    assert summary['by_source'] == {'knock': 2, 'boost': 1}
    assert summary['by_severity'] == {'high': 2, 'low': 1}


def test_issues_to_dataframe_empty():
    assert list(issues_to_dataframe([]).columns)[:3] == ['time', 'source', 'type']


class TestRunAll:

    def test_runs_selected_domains(self, make_dataset, time_series, store):
        dataset = make_dataset(time_series(10), knock_retard=-2.0, rpm=4000.0)
        results = run_all_analyses(dataset, store, domains=['knock', 'afr'])
        assert set(results) == {'knock', 'afr'}
        assert results['knock']['status'] == 'Success'
        assert results['afr']['status'] == 'Failure'
        issues = compile_log_issues(results)
        assert len(issues) == 1 and issues[0]['critical']

    def test_per_domain_params(self, make_dataset, time_series):
        dataset = make_dataset(time_series(10), knock_retard=-2.0, rpm=4000.0)
        results = run_all_analyses(dataset, domains=['knock'], params={'knock': {'severe_threshold': -1.0}})
        assert results['knock']['statistics']['severe_events'] == 1

    def test_unknown_domain(self, make_dataset, time_series):
        with pytest.raises(ValueError):
            run_all_analyses(make_dataset(time_series(2), rpm=1.0), domains=['oil'])
