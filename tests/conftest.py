import copy

import pandas as pd
import pytest

from log_loader import LogDataset, LogRow
from tuning_loader import CalibrationStore

RPM_AXIS = [1000.0, 2000.0, 3000.0, 4000.0]
LOAD_AXIS = [0.5, 1.0, 1.5, 2.0]
MAF_SCALE = [1.0, 2.0, 3.0, 4.0, 5.0]
MAF_VOLTAGE = [0.0, 1.25, 2.5, 3.75, 5.0]


def fuel_base_value(rpm_idx, load_idx):
    """fuel_base[r][c] = 10 + r + c, so every cell is distinct and non-zero."""
    return 10.0 + rpm_idx + load_idx


def _fuel_base_rows(n_rpm=len(RPM_AXIS), n_load=len(LOAD_AXIS)):
    return [', '.join(f"{fuel_base_value(r, c):.1f}" for c in range(n_load)) for r in range(n_rpm)]


def build_calibration_document(omit=(), **overrides):
    """
    A small but complete tune document. Maps named in `omit` are left out;
    keyword arguments replace a map's payload (list -> 'data', scalar -> 'value').
    """
    maps = {
        'base_spark_rpm_index': {'value': RPM_AXIS},
        'base_spark_map_index': {'value': LOAD_AXIS},
        'base_spark_mt': {'data': [[10, 12, 14, 16], [12, 14, 16, 18], [14, 16, 18, 20], [16, 18, 20, 22]]},
        'fuel_base': {'data': _fuel_base_rows()},
        'pe_enable_load': {'value': [1.5, 1.5, 1.5, 1.5]},
        'pe_enable_tps': {'value': [50, 50, 50, 50]},
        'boost_target': {'data': [[100, 150], [120, 200]]},
        'boost_target_rpm_index': {'value': [2000, 4000]},
        'boost_target_tps_index': {'value': [0, 100]},
        'knock_retard_max': {'value': -6.0},
        'fan_temp': {'data': [[96, 91], [104, 99]]},
        'boost_target_iat_index': {'value': [-20, 0, 20, 40, 60, 80, 100, 120]},
        'maf_scale': {'data': ['1.00, 2.00, 3.00, 4.00, 5.00']},
        'maf_voltage': {'value': MAF_VOLTAGE},
    }
    for map_id, payload in overrides.items():
        key = 'data' if isinstance(payload, (list, tuple)) else 'value'
        maps[map_id] = {key: payload}
    return {
        'version': '1.2.3',
        'cal_id': 'TEST-CAL',
        'car_id': 'TEST-CAR',
        'maps': [{'id': map_id, **payload} for map_id, payload in maps.items() if map_id not in omit],
    }


def build_dataset(times, **channels):
    """A LogDataset built straight from channel lists (no CSV header mapping)."""
    rows = []
    for i, t in enumerate(times):
        values = {name: (series[i] if isinstance(series, (list, tuple)) else series)
                  for name, series in channels.items()}
        rows.append(LogRow(time=float(t), **values))
    return LogDataset(rows)


def build_time_series(count, interval=0.05, start=0.0):
    return [round(start + i * interval, 6) for i in range(count)]


@pytest.fixture
def calibration_document():
    return build_calibration_document()


@pytest.fixture
def make_document():
    return build_calibration_document


@pytest.fixture
def store(calibration_document):
    return CalibrationStore(copy.deepcopy(calibration_document))


@pytest.fixture
def make_dataset():
    return build_dataset


@pytest.fixture
def time_series():
    return build_time_series


@pytest.fixture
def make_log_frame():
    """Factory for a raw CSV-shaped DataFrame with logger-style headers."""
    def factory(count=5, interval=0.05, **columns):
        data = {'Time (s)': build_time_series(count, interval)}
        for header, value in columns.items():
            data[header] = value if isinstance(value, (list, tuple)) else [value] * count
        return pd.DataFrame(data)
    return factory


def _autotune_rows(closed_count=6, open_count=6):
    """
    Closed-loop rows at the centre of cell (1, 1) with +3% combined trim, and
    open-loop rows at the centre of cell (2, 2) running 10% lean of target.
    """
    rows = []
    for _ in range(closed_count):
        rows.append(dict(rpm=2500.0, load=1.25, throttle=20.0, lambda_target=1.0,
                         lambda_measured=1.0, stft=2.0, ltft=1.0, maf_voltage=1.875))
    for _ in range(open_count):
        rows.append(dict(rpm=3500.0, load=1.75, throttle=80.0, lambda_target=0.8,
                         lambda_measured=0.88, stft=0.0, ltft=0.0, maf_voltage=3.125))
    return rows


def build_autotune_dataset(rows=None):
    rows = rows if rows is not None else _autotune_rows()
    times = build_time_series(len(rows))
    return LogDataset([LogRow(time=t, **row) for t, row in zip(times, rows)])


@pytest.fixture
def autotune_rows():
    return _autotune_rows


@pytest.fixture
def make_autotune_dataset():
    return build_autotune_dataset


@pytest.fixture
def autotune_dataset():
    return build_autotune_dataset()
