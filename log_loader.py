"""
Datalog Loading Module

Turns a raw CSV datalog into a fixed set of typed rows. Column headers are
resolved to channel fields once per log, so the analysis modules never touch
string-keyed row data. Malformed channel values become 0.0; rows with a
malformed timestamp are dropped.
"""

from dataclasses import dataclass, fields
from typing import Optional

import numpy as np
import pandas as pd

from column_resolver import resolve_column

TIME_CANDIDATES = ['Time (s)', 'Time', 'Time(s)', 'Timestamp', 'time']
IGNORE_FIRST_SECONDS = 10.0

DEFAULT_SAMPLING_INTERVAL = 0.05
MIN_SAMPLING_INTERVAL = 0.01
SAMPLING_WINDOW_ROWS = 1000
MAX_SAMPLING_GAP = 1.0

# field -> (candidate headers in priority order, keywords for the fallback stage)
CHANNELS = {
    'rpm': (
        ['Engine Speed (rpm)', 'Engine Speed', 'Engine RPM', 'RPM'],
        ['engine', 'speed', 'rpm'],
    ),
    'throttle': (
        ['Throttle Position (%)', 'Throttle Position', 'Throttle', 'TPS'],
        ['throttle', 'position', 'tps'],
    ),
    'load': (
        ['Load (MAF) (g/rev)', 'Load (MAF)', 'Engine Load', 'Load'],
        ['load', 'maf', 'g/rev'],
    ),
    'lambda_target': (
        ['Power Mode - Fuel Ratio Target (λ)', 'Power Mode - Fuel Ratio Target',
         'Fuel Ratio Target (λ)', 'Fuel Ratio Target', 'AFR Target (λ)', 'AFR Target',
         'Target AFR (λ)', 'Target AFR', 'Fuel Target (λ)', 'Fuel Target',
         'Desired AFR (λ)', 'Desired AFR', 'Commanded AFR (λ)', 'Commanded AFR'],
        ['fuel', 'ratio', 'target', 'commanded', 'desired', 'power', 'mode'],
    ),
    'lambda_measured': (
        ['Air/Fuel Sensor #1 (λ)', 'Air/Fuel Sensor #1', 'Air Fuel Sensor #1 (λ)',
         'Air Fuel Sensor #1', 'AFR Sensor #1 (λ)', 'AFR Sensor #1', 'Measured AFR (λ)',
         'Measured AFR', 'Actual AFR (λ)', 'Actual AFR', 'O2 Sensor (λ)', 'O2 Sensor',
         'Lambda Sensor #1 (λ)', 'Lambda Sensor #1'],
        ['fuel', 'sensor', 'measured', 'actual', 'lambda', 'o2', 'afr'],
    ),
    'stft': (
        ['Fuel Trim - Short Term (%)', 'Fuel Trim - Short Term', 'Short Term Fuel Trim (%)',
         'Short Term Fuel Trim', 'STFT (%)', 'STFT'],
        ['short', 'term', 'stft'],
    ),
    'ltft': (
        ['Fuel Trim - Long Term (%)', 'Fuel Trim - Long Term', 'Long Term Fuel Trim (%)',
         'Long Term Fuel Trim', 'LTFT (%)', 'LTFT'],
        ['long', 'term', 'ltft'],
    ),
    'coolant_temp': (
        ['Coolant Temperature (°C)', 'Coolant Temperature', 'Engine Coolant Temperature',
         'Coolant Temp', 'ECT'],
        ['coolant', 'temperature', 'ect'],
    ),
    'intake_temp': (
        ['Intake Air Temperature (°C)', 'Intake Air Temperature', 'IAT (°C)', 'IAT',
         'Intake Air Temp (°C)', 'Intake Air Temp', 'Air Intake Temperature (°C)',
         'Air Intake Temperature'],
        ['intake', 'air', 'temperature', 'iat'],
    ),
    'knock_retard': (
        ['Knock Retard (°)', 'Knock Retard (deg)', 'Knock Retard (degrees)', 'Knock Retard'],
        ['knock', 'retard'],
    ),
    'iam': (
        ['Ignition Advance Multiplier', 'Ignition Advance Multiplier (%)', 'IAM (%)', 'IAM',
         'Dynamic Advance Multiplier'],
        ['ignition', 'advance', 'multiplier', 'iam'],
    ),
    'wastegate_duty': (
        ['Wastegate Duty Cycle (%)', 'Wastegate Duty Cycle', 'Wastegate Duty', 'WG Duty', 'WGDC'],
        ['wastegate', 'duty', 'cycle'],
    ),
    'boost_target': (
        ['Boost Target (kPa)', 'Boost Target', 'Target Boost', 'Boost Setpoint', 'Desired Boost'],
        ['boost', 'target', 'setpoint', 'desired'],
    ),
    'manifold_pressure': (
        ['Manifold Absolute Pressure (kPa)', 'Manifold Air Pressure - Filtered (kPa)',
         'Manifold Absolute Pressure', 'Boost (kPa)', 'MAP', 'Boost Pressure', 'Actual Boost',
         'Intake Manifold Pressure'],
        ['manifold', 'pressure', 'map', 'actual'],
    ),
    'vehicle_speed': (
        ['Vehicle Speed (km/h)', 'Vehicle Speed', 'Speed'],
        ['vehicle', 'speed'],
    ),
    'maf_voltage': (
        ['Mass Air Flow Voltage (V)', 'Mass Air Flow Voltage', 'MAF Voltage', 'MAF Sensor Voltage'],
        ['mass', 'maf', 'voltage'],
    ),
}


@dataclass(frozen=True)
class LogRow:
    """One datalog sample. A channel is None when the log does not carry it."""
    time: float
    rpm: Optional[float] = None
    throttle: Optional[float] = None
    load: Optional[float] = None
    lambda_target: Optional[float] = None
    lambda_measured: Optional[float] = None
    stft: Optional[float] = None
    ltft: Optional[float] = None
    coolant_temp: Optional[float] = None
    intake_temp: Optional[float] = None
    knock_retard: Optional[float] = None
    iam: Optional[float] = None
    wastegate_duty: Optional[float] = None
    boost_target: Optional[float] = None
    manifold_pressure: Optional[float] = None
    vehicle_speed: Optional[float] = None
    maf_voltage: Optional[float] = None


ROW_FIELDS = [f.name for f in fields(LogRow)]


# --- Helper Functions ---

def find_time_column(columns):
    """Finds the timestamp column, falling back to any header mentioning 'time'."""
    for name in TIME_CANDIDATES:
        if name in columns:
            return name
    for col in columns:
        if 'time' in str(col).lower():
            return col
    return None


def map_channels(columns):
    """
    Resolves every known channel against the log headers in two passes.

    Pass 1 accepts only exact and normalized name matches; each hit is removed
    from the pool so a later channel cannot claim the same column. Pass 2 runs
    the keyword fallback for whatever is still unresolved.
    """
    available = list(columns)
    resolved = {field: None for field in CHANNELS}

    for field, (candidates, keywords) in CHANNELS.items():
        match = resolve_column(available, candidates, keywords, allow_keywords=False)
        if match is not None:
            resolved[field] = match
            available.remove(match)

    for field, (candidates, keywords) in CHANNELS.items():
        if resolved[field] is not None:
            continue
        match = resolve_column(available, candidates, keywords)
        if match is not None:
            resolved[field] = match
            available.remove(match)

    return resolved


def estimate_sampling_interval(times):
    """Mean of the leading sub-second gaps between samples, with a 10 ms floor."""
    times = np.asarray(times, dtype=float)[:SAMPLING_WINDOW_ROWS + 1]
    if len(times) < 2:
        return DEFAULT_SAMPLING_INTERVAL
    gaps = np.diff(times)
    gaps = gaps[(gaps > 0) & (gaps < MAX_SAMPLING_GAP)]
    if len(gaps) == 0:
        return DEFAULT_SAMPLING_INTERVAL
    return max(float(np.mean(gaps)), MIN_SAMPLING_INTERVAL)


# --- Dataset ---

class LogDataset:
    """
    An immutable, time-ordered collection of LogRows plus the header mapping
    that produced them.
    """

    def __init__(self, rows, columns=None, resolved_columns=None):
        self.rows = sorted(rows, key=lambda row: row.time)
        self.columns = list(columns) if columns is not None else []
        if resolved_columns is None:
            resolved_columns = {field: None for field in CHANNELS}
        self.resolved_columns = dict(resolved_columns)
        self._avg_interval = None
        self._frame = None

    @classmethod
    def from_frame(cls, log_df, skip_seconds=0.0):
        """
        Builds a dataset from a raw DataFrame.

        Args:
            log_df (pd.DataFrame): The datalog as read from CSV.
            skip_seconds (float): Leading seconds of the log to ignore.
        """
        columns = [str(c) for c in log_df.columns]
        log_df = log_df.copy()
        log_df.columns = columns

        time_col = find_time_column(columns)
        if time_col is None:
            print("Warning: No time column found in log. No rows were loaded.")
            return cls([], columns)

        times = pd.to_numeric(log_df[time_col], errors='coerce')
        valid = times.notna()
        dropped = int((~valid).sum())
        if dropped:
            print(f"Warning: Dropped {dropped} rows with an invalid time value.")
        log_df = log_df[valid]
        times = times[valid]

        if skip_seconds and len(times) > 0:
            cutoff = times.min() + skip_seconds
            keep = times >= cutoff
            print(f"Skipped {int((~keep).sum())} rows from the first {skip_seconds:g} seconds.")
            log_df = log_df[keep]
            times = times[keep]

        resolved = map_channels([c for c in columns if c != time_col])

        typed = pd.DataFrame({'time': times.astype(float)})
        for field, col in resolved.items():
            if col is None:
                continue
            typed[field] = pd.to_numeric(log_df[col], errors='coerce').fillna(0.0).astype(float)

        typed = typed.sort_values('time', kind='stable')
        rows = [LogRow(**record) for record in typed.to_dict('records')]

        missing = [field for field, col in resolved.items() if col is None]
        print(f"--- Log loaded: {len(rows)} rows, {len(columns)} columns, "
              f"{len(CHANNELS) - len(missing)} channels mapped. ---")
        if missing:
            print(f"  Channels not found: {', '.join(missing)}")

        return cls(rows, columns, resolved)

    def __len__(self):
        return len(self.rows)

    @property
    def time_range(self):
        if not self.rows:
            return (0.0, 0.0)
        return (self.rows[0].time, self.rows[-1].time)

    @property
    def avg_sampling_interval(self):
        if self._avg_interval is None:
            self._avg_interval = estimate_sampling_interval([row.time for row in self.rows])
        return self._avg_interval

    def missing_channels(self, required_fields):
        """Returns the required fields this log could not resolve."""
        missing = []
        for field in required_fields:
            if self.resolved_columns.get(field) is not None:
                continue
            # Rows built directly (not from a CSV) carry no header mapping.
            if self.rows and getattr(self.rows[0], field) is not None:
                continue
            missing.append(field)
        return missing

    def column_for(self, field):
        return self.resolved_columns.get(field)

    def to_frame(self):
        """The typed rows as a DataFrame; unresolved channels are all-NaN columns."""
        if self._frame is None:
            records = [[getattr(row, name) for name in ROW_FIELDS] for row in self.rows]
            frame = pd.DataFrame(records, columns=ROW_FIELDS)
            self._frame = frame.apply(pd.to_numeric, errors='coerce')
        return self._frame.copy()


def read_log_csv(source, skip_seconds=IGNORE_FIRST_SECONDS):
    """Reads a CSV datalog from a path or file-like object into a LogDataset."""
    log_df = pd.read_csv(source)
    return LogDataset.from_frame(log_df, skip_seconds=skip_seconds)
