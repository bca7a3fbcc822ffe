import json

from error_reporter import APP_VERSION, build_report_context, build_report_row, send_to_google_sheets
from log_loader import LogDataset, LogRow


def test_report_row_layout():
    row = build_report_row('Traceback...', 'boom', 'me@example.com', {'domains': ['knock']})
    assert len(row) == 5
    assert row[1:3] == ['boom', 'me@example.com']
    assert json.loads(row[3]) == {'domains': ['knock']}
    assert row[4] == 'Traceback...'


def test_report_row_without_context():
    assert build_report_row('tb', '', '')[3] == '{}'


def test_missing_credentials_are_reported_not_raised(monkeypatch):
    monkeypatch.setattr('error_reporter.st.secrets', {}, raising=False)
    ok, message = send_to_google_sheets('tb', 'desc', 'contact')
    assert ok is False
    assert message.startswith('Failed to send error report')


class TestReportContext:

    def test_settings_only_before_anything_loads(self):
        context = build_report_context({'domains': ['knock'], 'autotune': False})
        assert context == {'app_version': APP_VERSION, 'settings': {'domains': ['knock'], 'autotune': False}}

    def test_log_and_tune_are_described(self, store):
        dataset = LogDataset([LogRow(time=0.0, rpm=1000.0), LogRow(time=2.5, rpm=1200.0)],
                             resolved_columns={'rpm': 'Engine Speed (rpm)', 'load': None, 'iam': None})
        context = build_report_context({}, dataset, store)
        assert context['log'] == {'rows': 2, 'time_range': [0.0, 2.5], 'unmapped_channels': ['iam', 'load']}
        assert context['tune']['version'] == '1.2.3'
        assert context['tune']['cal_id'] == 'TEST-CAL'
        assert context['tune']['map_count'] == len(store.maps)

    def test_per_domain_and_autotune_status(self):
        event_results = {
            'knock': {'status': 'Success', 'event_groups': ['g1', 'g2'], 'error': None},
            'afr': {'status': 'Failure', 'event_groups': [], 'error': 'Required AFR columns not found.'},
        }
        autotune_results = {'status': 'Failure', 'mode': 'maf_scale', 'error_code': 'axis_not_ascending'}
        context = build_report_context({}, event_results=event_results, autotune_results=autotune_results)
        assert context['analyses'] == {
            'knock': {'status': 'Success', 'event_groups': 2, 'error': None},
            'afr': {'status': 'Failure', 'event_groups': 0, 'error': 'Required AFR columns not found.'},
        }
        assert context['autotune'] == {'status': 'Failure', 'mode': 'maf_scale', 'error_code': 'axis_not_ascending',
                                       'modified_cells': 0}
        assert 'log' not in context and 'tune' not in context

    def test_context_serializes_into_report_row(self, store):
        context = build_report_context({'skip_seconds': 0.0}, store=store)
        assert json.loads(build_report_row('tb', '', '', context)[3])['tune']['version'] == '1.2.3'
