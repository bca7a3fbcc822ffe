import pytest

from AFR import run_afr_analysis
from BOOST import run_boost_analysis
from ECT import run_coolant_analysis
from IAM import DEFAULT_PARAMS as IAM_PARAMS
from IAM import classify_iam_severity, normalize_iam, run_iam_analysis
from IAT import classify_iat, run_iat_analysis
from KNK import run_knk_analysis
from LOAD import run_load_limit_analysis
from TRIM import build_trim_config, run_ltft_analysis, run_stft_analysis
from tuning_loader import DEFAULT_IAT_THRESHOLDS, CalibrationStore


class TestAFR:

    def test_closed_loop_rows_are_ignored(self, make_dataset, time_series):
        dataset = make_dataset(time_series(6), lambda_target=1.0, lambda_measured=1.2)
        results = run_afr_analysis(dataset)
        assert results['status'] == 'Success'
        assert results['event_groups'] == []
        assert results['warnings']

    def test_small_lean_deviation_is_low_severity(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), lambda_target=0.80, lambda_measured=0.835)
        group = run_afr_analysis(dataset)['event_groups'][0]
        assert group.classification == 'lean'
        assert group.severity == 'low'

    def test_large_lean_deviation_is_high_severity(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), lambda_target=0.80, lambda_measured=0.90)
        group = run_afr_analysis(dataset)['event_groups'][0]
        assert group.severity == 'high'
        assert group.details['max_deviation_percent'] == pytest.approx(12.5)

    def test_rich_is_low_severity(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), lambda_target=0.80, lambda_measured=0.70)
        results = run_afr_analysis(dataset)
        assert results['event_groups'][0].classification == 'rich'
        assert results['event_groups'][0].severity == 'low'
        assert not results['results_afr'].empty


class TestBoost:

    def test_overshoot_with_logged_target(self, make_dataset, time_series):
        dataset = make_dataset(time_series(10), manifold_pressure=180.0, boost_target=160.0,
                               throttle=80.0, wastegate_duty=40.0, rpm=4000.0)
        results = run_boost_analysis(dataset)
        assert results['statistics']['event_counts'] == {'overshoot': 1}
        group = results['event_groups'][0]
        assert group.severity == 'high'
        assert group.details['boost_target'] == pytest.approx(160.0)
        assert results['statistics']['max_overshoot'] == pytest.approx(20.0)

    def test_part_throttle_undershoot_is_suppressed(self, make_dataset, time_series):
        dataset = make_dataset(time_series(20), manifold_pressure=120.0, boost_target=160.0, throttle=40.0)
        assert run_boost_analysis(dataset)['event_groups'] == []

    def test_short_undershoot_is_a_transient(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), manifold_pressure=120.0, boost_target=160.0, throttle=90.0)
        results = run_boost_analysis(dataset)
        assert results['event_groups'] == []
        assert results['statistics']['dropped_transients'] == 1

    def test_target_falls_back_to_tune(self, make_dataset, time_series, store):
        dataset = make_dataset(time_series(10), manifold_pressure=190.0, throttle=100.0, rpm=4000.0)
        results = run_boost_analysis(dataset, store)
        assert any('boost_target table' in w for w in results['warnings'])
        assert results['event_groups'][0].details['boost_target'] == pytest.approx(200.0)
        assert results['event_groups'][0].classification == 'undershoot'

    def test_missing_pressure(self, make_dataset, time_series):
        results = run_boost_analysis(make_dataset(time_series(3), rpm=3000.0))
        assert results['status'] == 'Failure'


class TestTrims:

    def test_positive_and_negative_events(self, make_dataset, time_series):
        stft = [12.0] * 3 + [0.0] * 30 + [-15.0] * 3
        dataset = make_dataset(time_series(len(stft)), stft=stft, ltft=0.0)
        results = run_stft_analysis(dataset)
        assert results['statistics']['positive_events'] == 1
        assert results['statistics']['negative_events'] == 1
        assert results['statistics']['max_positive'] == pytest.approx(12.0)
        assert 'results_stft' in results

    def test_ltft_reads_its_own_channel(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), stft=20.0, ltft=0.0)
        results = run_ltft_analysis(dataset)
        assert results['event_groups'] == []
        assert 'results_ltft' in results

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_trim_config('MTFT')


class TestCoolant:

    def test_uses_tune_fan_threshold(self, make_dataset, time_series, store):
        temps = [100.0] * 5 + [104.5] * 5
        dataset = make_dataset(time_series(len(temps)), coolant_temp=temps)
        results = run_coolant_analysis(dataset, store)
        assert results['statistics']['high_temp_events'] == 1
        group = results['event_groups'][0]
        assert group.severity == 'critical'
        assert group.details['fan_threshold'] == 104.0

    def test_default_threshold_without_tune(self, make_dataset, time_series):
        dataset = make_dataset(time_series(5), coolant_temp=104.5)
        results = run_coolant_analysis(dataset)
        assert results['event_groups'] == []
        assert results['statistics']['max_temp'] == pytest.approx(104.5)


class TestIAT:

    @pytest.mark.parametrize('temp, expected', [
        (110.0, ('high_temp', 'critical')),
        (85.0, ('high_temp', 'severe')),
        (65.0, ('high_temp', 'mild')),
        (30.0, ('normal', 'normal')),
        (3.0, ('low_temp', 'mild')),
        (-5.0, ('low_temp', 'moderate')),
        (-20.0, ('low_temp', 'severe')),
    ])
    def test_classification_ladder(self, temp, expected):
        assert classify_iat(temp, DEFAULT_IAT_THRESHOLDS) == expected

    def test_hot_and_cold_events(self, make_dataset, time_series):
        temps = [85.0] * 3 + [30.0] * 60 + [-15.0] * 3
        dataset = make_dataset(time_series(len(temps)), intake_temp=temps)
        results = run_iat_analysis(dataset)
        assert results['statistics']['high_temp_events'] == 1
        assert results['statistics']['low_temp_events'] == 1
        severities = {g.classification: g.severity for g in results['event_groups']}
        assert severities == {'high_temp': 'severe', 'low_temp': 'severe'}

    def test_implausible_readings_are_ignored(self, make_dataset, time_series):
        dataset = make_dataset(time_series(3), intake_temp=-60.0)
        results = run_iat_analysis(dataset)
        assert results['statistics']['total_samples'] == 0


class TestKnock:

    def test_mild_and_severe(self, make_dataset, time_series):
        retard = [-1.0, -1.5, 0.0, 0.0, 0.0, 0.0, -5.0, -6.5]
        dataset = make_dataset(time_series(len(retard)), knock_retard=retard, rpm=4500.0)
        results = run_knk_analysis(dataset)
        stats = results['statistics']
        assert stats['mild_events'] == 1
        assert stats['severe_events'] == 1
        assert stats['max_knock_retard'] == pytest.approx(-6.5)
        assert stats['rpm_range'] == (4500.0, 4500.0)

    def test_retard_limit_from_tune(self, make_dataset, time_series, store):
        dataset = make_dataset(time_series(2), knock_retard=[-6.0, -6.0], rpm=4500.0)
        results = run_knk_analysis(dataset, store)
        assert results['statistics']['retard_limit'] == -6.0
        assert results['statistics']['events_at_retard_limit'] == 1
        assert results['warnings']


class TestLoadLimit:

    def test_violation_against_stock_curve(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), load=1.8, rpm=2000.0)
        results = run_load_limit_analysis(dataset)
        group = results['event_groups'][0]
        assert group.classification == 'limit_violation'
        assert group.severity == 'severe'
        assert group.details['load_limit'] == pytest.approx(1.50)
        assert group.details['load_ratio'] == pytest.approx(1.2)
        assert results['statistics']['violation_events'] == 1
        assert results['statistics']['max_load'] == pytest.approx(1.8)
        assert 'No tune loaded. Load limits use the stock load_max curve.' in results['warnings']
        assert not results['results_load'].empty

    def test_near_limit_and_moderate_violation(self, make_dataset, time_series):
        load = [1.45] * 4 + [1.0] * 4 + [1.6] * 4
        dataset = make_dataset(time_series(len(load)), load=load, rpm=2000.0)
        results = run_load_limit_analysis(dataset)
        groups = results['event_groups']
        assert [(g.classification, g.severity) for g in groups] == [
            ('near_limit', 'mild'), ('limit_violation', 'moderate')]
        assert results['statistics']['near_limit_events'] == 1
        assert results['statistics']['violation_events'] == 1

    def test_limit_comes_from_tune(self, make_dataset, time_series, make_document):
        store = CalibrationStore(make_document(load_max=[1.2, 1.6, 2.0, 2.4]))
        dataset = make_dataset(time_series(4), load=1.8, rpm=2000.0)
        results = run_load_limit_analysis(dataset, store)
        group = results['event_groups'][0]
        assert group.details['load_limit'] == pytest.approx(1.6)
        assert group.severity == 'severe'
        assert results['warnings'] == []

    def test_single_sample_spike_is_a_transient(self, make_dataset, time_series):
        dataset = make_dataset(time_series(5), load=[1.0, 1.0, 1.8, 1.0, 1.0], rpm=2000.0)
        results = run_load_limit_analysis(dataset)
        assert results['event_groups'] == []
        assert results['statistics']['dropped_transients'] == 1

    def test_engine_off_rows_are_ignored(self, make_dataset, time_series):
        dataset = make_dataset(time_series(4), load=1.8, rpm=0.0)
        assert run_load_limit_analysis(dataset)['statistics']['total_samples'] == 0

    def test_missing_load(self, make_dataset, time_series):
        results = run_load_limit_analysis(make_dataset(time_series(3), rpm=2000.0))
        assert results['status'] == 'Failure'


class TestIAM:

    @pytest.mark.parametrize('iam, expected', [
        (0.95, 'mild'), (0.85, 'moderate'), (0.6, 'severe'), (0.4, 'critical'),
    ])
    def test_severity_ladder(self, iam, expected):
        assert classify_iam_severity(iam, IAM_PARAMS) == expected

    def test_percent_values_are_normalized(self, make_dataset, time_series):
        assert normalize_iam(87.5) == pytest.approx(0.875)
        assert normalize_iam(0.5) == 0.5
        dataset = make_dataset(time_series(5), iam=[100.0, 100.0, 87.5, 87.5, 100.0])
        results = run_iam_analysis(dataset)
        group = results['event_groups'][0]
        assert group.max_metric == pytest.approx(0.875)
        assert group.severity == 'moderate'
        assert results['statistics']['min_iam'] == pytest.approx(0.875)
        assert results['statistics']['current_iam'] == pytest.approx(1.0)

    def test_knock_correlation_and_counts(self, make_dataset, time_series):
        dataset = make_dataset(time_series(6, interval=1.0),
                               iam=[0.8, 1.0, 1.0, 1.0, 0.7, 1.0],
                               knock_retard=[-2.0, 0.0, 0.0, 0.0, 0.0, 0.0])
        stats = run_iam_analysis(dataset)['statistics']
        assert stats['low_iam_events'] == 2
        assert stats['moderate_events'] == 1
        assert stats['severe_events'] == 1
        assert stats['knock_correlation'] == pytest.approx(50.0)

    def test_recovery_rate(self, make_dataset, time_series):
        dataset = make_dataset(time_series(3, interval=1.0), iam=[0.7, 0.8, 1.0])
        results = run_iam_analysis(dataset)
        assert results['statistics']['recovery_rate'] == pytest.approx(0.15)
        assert results['event_groups'][0].details['iam'] == pytest.approx(0.7)

    def test_full_advance_has_no_events(self, make_dataset, time_series):
        results = run_iam_analysis(make_dataset(time_series(4), iam=1.0))
        assert results['event_groups'] == []
        assert results['statistics']['knock_correlation'] == 0.0
