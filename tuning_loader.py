"""
Tune File Loading Module

Parses a JSON tune file into an index of named maps and exposes them as NumPy
arrays. Tune files written by different tools disagree on how tables are
stored (nested lists, comma-separated row strings, JSON-encoded rows), so all
accessors coerce tolerantly: anything that is not a number becomes 0.

Domain accessors fall back to documented stock values whenever a map or axis
is absent, so partial tune files still produce usable analysis.
"""

import copy
import json
import os

import numpy as np
from scipy.interpolate import RegularGridInterpolator

# --- Stock Fallback Values ---
DEFAULT_BOOST_LIMIT = 234.7
DEFAULT_LOAD_LIMITS = [1.28, 1.35, 1.42, 1.50, 1.58, 1.67, 1.75, 1.83,
                       1.92, 2.00, 2.08, 2.17, 2.25, 2.33, 2.42, 2.54]
DEFAULT_LOAD_LIMIT_RPM = [800, 1200, 1600, 2000, 2400, 2800, 3200, 3600,
                          4000, 4400, 4800, 5200, 5600, 6000, 6400, 6800]
DEFAULT_PE_TARGET = 1.0
DEFAULT_BOOST_ERROR_INDEX = [20.3, 11.7, 5.3, 2.1]
DEFAULT_KNOCK_PARAMETERS = {
    'retard_max': -8.0,
    'retard_attack': -1.0,
    'retard_decay': 0.2,
    'rpm_min': 1000.0,
    'sensitivity_low_load': 0.81,
    'sensitivity_low_load_factor': 196.9,
}
DEFAULT_REV_LIMIT = 8000.0
DEFAULT_FAN_TEMPERATURES = {
    'low_speed_on': 95.0,
    'low_speed_off': 90.0,
    'high_speed_on': 105.0,
    'high_speed_off': 100.0,
}
DEFAULT_IAT_THRESHOLDS = {
    'normal_min': 5.0,
    'normal_max': 60.0,
    'high': 80.0,
    'critical': 100.0,
    'low': 0.0,
    'very_low': -10.0,
}


# --- Helper Functions ---

def _to_float(value):
    """Coerces a single entry to float; anything non-numeric becomes 0.0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if np.isnan(number):
        return 0.0
    return number


def _split_row_string(row):
    """Parses a row stored as a JSON list string or a comma-separated string."""
    try:
        parsed = json.loads(row)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [_to_float(v) for v in parsed]
    if isinstance(parsed, (int, float)):
        return [_to_float(parsed)]
    return [_to_float(v.strip()) for v in row.split(',') if v.strip() != '']


def _flatten(values):
    flat = []
    for item in values:
        if isinstance(item, (list, tuple)):
            flat.extend(_flatten(item))
        elif isinstance(item, str):
            flat.extend(_split_row_string(item))
        else:
            flat.append(_to_float(item))
    return flat


def is_strictly_ascending(axis):
    axis = np.asarray(axis, dtype=float)
    return axis.ndim == 1 and len(axis) > 0 and bool(np.all(np.diff(axis) > 0))


def interpolate_1d(values, axis, x):
    """
    Clamped linear interpolation of `values` over breakpoints `axis`.

    Returns 0.0 when the inputs are empty or their lengths disagree.
    """
    if values is None or axis is None:
        return 0.0
    values = np.asarray(values, dtype=float).ravel()
    axis = np.asarray(axis, dtype=float).ravel()
    if len(values) == 0 or len(values) != len(axis):
        return 0.0
    return float(np.interp(x, axis, values))


def interpolate_2d(table, row_axis, col_axis, r, c):
    """
    Clamped bilinear interpolation of table[row][col].

    Returns 0.0 when the table shape does not match the axis lengths.
    """
    if table is None or row_axis is None or col_axis is None:
        return 0.0
    table = np.asarray(table, dtype=float)
    row_axis = np.asarray(row_axis, dtype=float).ravel()
    col_axis = np.asarray(col_axis, dtype=float).ravel()
    if table.ndim != 2 or table.shape != (len(row_axis), len(col_axis)) or table.size == 0:
        print("Warning: Table dimensions do not match index lengths.")
        return 0.0

    r = float(np.clip(r, row_axis[0], row_axis[-1]))
    c = float(np.clip(c, col_axis[0], col_axis[-1]))

    if len(row_axis) == 1:
        return interpolate_1d(table[0], col_axis, c)
    if len(col_axis) == 1:
        return interpolate_1d(table[:, 0], row_axis, r)

    try:
        interpolator = RegularGridInterpolator((row_axis, col_axis), table, method='linear')
    except ValueError as e:
        print(f"Warning: Cannot interpolate table with non-ascending axes: {e}")
        return 0.0
    return float(interpolator([[r, c]])[0])


class CalibrationStore:
    """
    Holds one parsed tune file. The parsed document is never mutated; use
    get_raw_clone() to obtain a copy for editing and export.
    """

    interpolate_1d = staticmethod(interpolate_1d)
    interpolate_2d = staticmethod(interpolate_2d)

    def __init__(self, document=None):
        self.tune_data = None
        self.maps = {}
        self.metadata = {}
        self.version = None
        if document is not None:
            self.parse(document)

    # --- Loading ---

    def parse(self, document):
        """
        Parses a tune document (dict, JSON string or bytes).

        Returns:
            bool: True on success. On failure the previously loaded tune is kept.
        """
        if not isinstance(document, (bytes, str, dict)):
            print(f"Error parsing tune file: expected a dict, str or bytes, not {type(document).__name__}.")
            return False
        try:
            if isinstance(document, bytes):
                document = document.decode('utf-8')
            data = json.loads(document) if isinstance(document, str) else copy.deepcopy(document)
        except ValueError as e:
            print(f"Error parsing tune file: {e}")
            return False

        if not isinstance(data, dict) or not isinstance(data.get('maps'), list):
            print("Error parsing tune file: expected an object containing a 'maps' list.")
            return False

        maps = {}
        skipped = 0
        for entry in data['maps']:
            if not isinstance(entry, dict) or not entry.get('id'):
                skipped += 1
                continue
            if 'value' not in entry and 'data' not in entry:
                print(f"Warning: Map '{entry['id']}' has neither 'value' nor 'data'.")
            if entry['id'] in maps:
                print(f"Warning: Map '{entry['id']}' is defined more than once. Keeping the last one.")
            maps[entry['id']] = entry

        if skipped:
            print(f"Warning: Skipped {skipped} map entries without an id.")

        self.tune_data = data
        self.maps = maps
        self.metadata = {
            'cal_id': data.get('cal_id'),
            'car_id': data.get('car_id'),
            'rom_id': data.get('rom_id'),
            'version': data.get('version'),
            'meta': data.get('meta') or {},
        }
        self.version = self.metadata['version']
        print(f"--- Tune loading complete. Loaded {len(maps)} maps. ---")
        return True

    def load_file(self, tune_file_path):
        """Reads and parses a tune file from disk."""
        print(f"\n--- Loading tune file: {os.path.basename(tune_file_path)} ---")
        if not os.path.exists(tune_file_path):
            print(f"Warning: Tune file not found at '{tune_file_path}'. Skipping load.")
            return False
        with open(tune_file_path, 'rb') as f:
            return self.parse(f.read())

    def is_loaded(self):
        return self.tune_data is not None and len(self.maps) > 0

    def get_version(self):
        return self.version

    def get_metadata(self):
        return dict(self.metadata)

    def get_raw_clone(self):
        """Returns a deep copy of the loaded document, or None if nothing is loaded."""
        if self.tune_data is None:
            return None
        return copy.deepcopy(self.tune_data)

    # --- Generic Accessors ---

    def get_map(self, map_id):
        return self.maps.get(map_id)

    def get_parameter(self, map_id):
        """Returns a map's raw 'value', falling back to its 'data'."""
        definition = self.maps.get(map_id)
        if definition is None:
            return None
        if definition.get('value') is not None:
            return definition['value']
        return definition.get('data')

    def get_array(self, map_id):
        """Returns a map as a flat float array, or None if it is missing or empty."""
        param = self.get_parameter(map_id)
        if param is None:
            return None
        if isinstance(param, (list, tuple)):
            values = _flatten(param)
        elif isinstance(param, str):
            values = _split_row_string(param)
        else:
            values = [_to_float(param)]
        if not values:
            return None
        return np.array(values, dtype=float)

    def get_table(self, map_id):
        """Returns a map as a 2D float array, or None if it is missing or ragged."""
        param = self.get_parameter(map_id)
        if param is None:
            return None
        if isinstance(param, str):
            param = [param]
        if not isinstance(param, (list, tuple)) or len(param) == 0:
            return None

        if not any(isinstance(row, (list, tuple, str)) for row in param):
            rows = [[_to_float(v) for v in param]]
        else:
            rows = []
            for row in param:
                if isinstance(row, (list, tuple)):
                    rows.append(_flatten(row))
                elif isinstance(row, str):
                    rows.append(_split_row_string(row))
                else:
                    rows.append([_to_float(row)])

        widths = {len(row) for row in rows}
        if len(widths) != 1 or 0 in widths:
            print(f"Warning: Table '{map_id}' has rows of unequal length and cannot be used.")
            return None
        return np.array(rows, dtype=float)

    def _scalar(self, map_id, default):
        values = self.get_array(map_id)
        if values is None or len(values) == 0:
            return default
        return float(values[0])

    # --- Domain Accessors ---

    def get_base_spark(self, rpm, load, transmission='mt'):
        table = self.get_table(f'base_spark_{transmission}')
        rpm_index = self.get_array('base_spark_rpm_index')
        load_index = self.get_array('base_spark_map_index')
        if table is None or rpm_index is None or load_index is None:
            return 0.0
        return interpolate_2d(table, rpm_index, load_index, rpm, load)

    def get_boost_target(self, rpm, tps):
        table = self.get_table('boost_target')
        rpm_index = self.get_array('boost_target_rpm_index')
        tps_index = self.get_array('boost_target_tps_index')
        if table is None or rpm_index is None or tps_index is None:
            return 0.0
        return interpolate_2d(table, rpm_index, tps_index, rpm, tps)

    def get_boost_limit(self, rpm):
        limits = self.get_array('boost_limit')
        rpm_index = self.get_array('base_spark_rpm_index')
        if limits is None or rpm_index is None:
            return DEFAULT_BOOST_LIMIT
        return interpolate_1d(limits, rpm_index, rpm)

    def get_load_limit(self, rpm):
        limits = self.get_array('load_max')
        rpm_index = self.get_array('base_spark_rpm_index')
        if limits is None or rpm_index is None:
            return interpolate_1d(DEFAULT_LOAD_LIMITS, DEFAULT_LOAD_LIMIT_RPM, rpm)
        return interpolate_1d(limits, rpm_index, rpm)

    def get_pe_target(self, rpm, load, mode='initial'):
        table = self.get_table(f'pe_{mode}')
        rpm_index = self.get_array('pe_rpm_index')
        load_index = self.get_array('pe_load_index')
        if table is None or rpm_index is None or load_index is None:
            return DEFAULT_PE_TARGET
        return interpolate_2d(table, rpm_index, load_index, rpm, load)

    def get_pe_enable_thresholds(self):
        return {
            'load': self.get_array('pe_enable_load'),
            'tps': self.get_array('pe_enable_tps'),
            'rpm_index': self.get_array('base_spark_rpm_index'),
        }

    def is_pe_mode_active(self, rpm, load, tps):
        thresholds = self.get_pe_enable_thresholds()
        rpm_index = thresholds['rpm_index']
        if thresholds['load'] is None or thresholds['tps'] is None or rpm_index is None:
            return False
        idx = int(np.clip(np.searchsorted(rpm_index, rpm, side='right') - 1, 0, len(rpm_index) - 1))
        load_threshold = thresholds['load'][idx] if idx < len(thresholds['load']) else 0.0
        tps_threshold = thresholds['tps'][idx] if idx < len(thresholds['tps']) else 0.0
        return load >= load_threshold and tps >= tps_threshold

    def get_boost_error_index(self):
        values = self.get_array('boost_error_index')
        if values is None:
            return np.array(DEFAULT_BOOST_ERROR_INDEX, dtype=float)
        return values

    def get_knock_parameters(self):
        return {
            'retard_max': self._scalar('knock_retard_max', DEFAULT_KNOCK_PARAMETERS['retard_max']),
            'retard_attack': self._scalar('knock_retard_attack', DEFAULT_KNOCK_PARAMETERS['retard_attack']),
            'retard_decay': self._scalar('knock_retard_decay', DEFAULT_KNOCK_PARAMETERS['retard_decay']),
            'rpm_min': self._scalar('knock_rpm_min', DEFAULT_KNOCK_PARAMETERS['rpm_min']),
            'sensitivity_low_load': self._scalar(
                'knock_sensitivity_low_load', DEFAULT_KNOCK_PARAMETERS['sensitivity_low_load']),
            'sensitivity_low_load_factor': self._scalar(
                'knock_sensitivity_low_load_factor', DEFAULT_KNOCK_PARAMETERS['sensitivity_low_load_factor']),
        }

    def get_rev_limit(self, gear=0):
        limits = self.get_array('rev_limit')
        if limits is not None and 0 <= gear < len(limits):
            return float(limits[gear])
        return DEFAULT_REV_LIMIT

    def get_fan_temperatures(self):
        """Cooling fan switch points from the 2x2 'fan_temp' table (low/high speed, on/off)."""
        table = self.get_table('fan_temp')
        if table is None or table.shape[0] < 2 or table.shape[1] < 2:
            return dict(DEFAULT_FAN_TEMPERATURES)
        return {
            'low_speed_on': float(table[0, 0]) or DEFAULT_FAN_TEMPERATURES['low_speed_on'],
            'low_speed_off': float(table[0, 1]) or DEFAULT_FAN_TEMPERATURES['low_speed_off'],
            'high_speed_on': float(table[1, 0]) or DEFAULT_FAN_TEMPERATURES['high_speed_on'],
            'high_speed_off': float(table[1, 1]) or DEFAULT_FAN_TEMPERATURES['high_speed_off'],
        }

    def get_iat_thresholds(self):
        """
        Intake air temperature bands derived from the boost IAT compensation axis.

        The axis breakpoints (typically -20..120 C in 20 C steps) are sorted and
        picked by position; any breakpoint the axis is too short to provide
        keeps its stock value.
        """
        thresholds = dict(DEFAULT_IAT_THRESHOLDS)
        axis = self.get_array('boost_target_iat_index')
        if axis is not None and len(axis) >= 2:
            axis = np.sort(axis)
            for key, position in (('low', 0), ('normal_min', 1), ('normal_max', 4),
                                  ('high', 6), ('critical', 7)):
                if position < len(axis):
                    thresholds[key] = float(axis[position])
            thresholds['very_low'] = thresholds['low'] - 10.0

        enable_at = self.get_parameter('boost_iat_enable_at')
        enable_mt = self.get_parameter('boost_iat_enable_mt')
        if enable_at is None and enable_mt is None:
            thresholds['compensation_enabled'] = True
        else:
            thresholds['compensation_enabled'] = _to_float(enable_at) == 1 or _to_float(enable_mt) == 1
        return thresholds
