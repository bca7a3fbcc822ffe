"""
Fuel Table Autotune Module

This module contains pure, non-UI functions that compare logged fueling
behaviour against the loaded tune and suggest corrections for the base fuel
table (fuel_base, RPM x Load) or the MAF scale curve (maf_scale, by sensor
voltage).

Rows are binned by table cell. Open-loop (power enrichment) rows contribute
the ratio of measured to commanded lambda; closed-loop rows contribute the
combined short and long term fuel trim. Where a cell has both, the open-loop
suggestion wins. Every change is limited to a percentage of the value in the
tune used for analysis, so re-running on a corrected tune converges instead of
compounding.
"""

import json
from dataclasses import dataclass

import numpy as np
import pandas as pd

from tuning_loader import CalibrationStore, is_strictly_ascending
from utils import format_array, format_table_rows, table_to_dataframe

MODES = ('fuel_base', 'maf_scale')
REQUIRED_CHANNELS = ('rpm', 'load', 'lambda_measured', 'lambda_target', 'stft', 'ltft', 'throttle')
MAF_REQUIRED_CHANNEL = 'maf_voltage'
MAF_VOLTAGE_AXIS_IDS = ['maf_voltage', 'maf_voltage_index', 'maf_scale_voltage', 'maf_scale_voltage_index']
DEFAULT_MAX_MAF_VOLTAGE = 5.0
OPEN_LOOP_MAX_TARGET = 1.0
CHANGE_EPSILON_PCT = 0.01
DEFAULT_EXPORT_NAME = 'autotuned_tune.tune'


class DimensionMismatchError(ValueError):
    """Raised when a base tune's table shape differs from the tune used for analysis."""

    def __init__(self, message, analysis_shape, base_shape):
        super().__init__(f"{message} (analysis: {analysis_shape}, base: {base_shape})")
        self.analysis_shape = analysis_shape
        self.base_shape = base_shape


@dataclass
class CorrectionCell:
    index: tuple            # (rpm_idx, load_idx) for fuel_base, (voltage_idx,) for maf_scale
    breakpoints: tuple      # axis values at index
    source: str             # 'open' or 'closed'
    samples: int
    mean_value: float       # mean lambda ratio (open) or mean combined trim % (closed)
    current_value: float
    suggested_value: float
    applied_value: float
    change_pct: float
    applied_change_pct: float
    clamped: bool

    @property
    def clamp_delta(self):
        return self.suggested_value - self.applied_value


# --- Helper Functions ---

def axis_index(values, axis):
    """Clamped bin lookup: the last breakpoint at or below each value."""
    axis = np.asarray(axis, dtype=float)
    idx = np.searchsorted(axis, np.asarray(values, dtype=float), side='right') - 1
    return np.clip(idx, 0, len(axis) - 1)


def axis_weight(values, idx, axis):
    """
    How centred each value sits within its bin: 1.0 at the bin centre, 0.0 at
    or beyond the bin edges. The last bin reuses the final axis span.
    """
    values = np.asarray(values, dtype=float)
    axis = np.asarray(axis, dtype=float)
    if len(axis) < 2:
        return np.ones_like(values)
    lower_idx = np.minimum(np.asarray(idx), len(axis) - 2)
    lower, upper = axis[lower_idx], axis[lower_idx + 1]
    center = (lower + upper) / 2
    half_width = (upper - lower) / 2
    with np.errstate(divide='ignore', invalid='ignore'):
        weight = 1.0 - np.abs(values - center) / half_width
    weight = np.where(half_width > 0, weight, 1.0)
    return np.clip(weight, 0.0, None)


def default_maf_voltage_axis(length):
    if length < 1:
        return np.array([], dtype=float)
    if length == 1:
        return np.array([0.0])
    return np.round(np.linspace(0.0, DEFAULT_MAX_MAF_VOLTAGE, length), 3)


def get_maf_voltage_axis(store, expected_length):
    for map_id in MAF_VOLTAGE_AXIS_IDS:
        axis = store.get_array(map_id)
        if axis is not None and len(axis):
            return axis
    return default_maf_voltage_axis(expected_length)


def export_filename(name=None):
    """Normalizes a download name so it always carries a .tune or .json extension."""
    name = (name or '').strip() or DEFAULT_EXPORT_NAME
    if name.lower().endswith(('.tune', '.json')):
        return name
    return f"{name}.tune"


def serialize_tune(document):
    return json.dumps(document, indent=2)


def _percent_change(new, old):
    with np.errstate(divide='ignore', invalid='ignore'):
        pct = (np.asarray(new, dtype=float) - old) / old * 100.0
    return np.where(np.asarray(old) != 0, pct, 0.0)


def _summarize_bins(frame, keys, value_col, min_samples):
    """Aggregates rows per bin. Returns (bins meeting min_samples, number of bins excluded)."""
    if frame.empty:
        return pd.DataFrame(columns=keys + ['samples', 'mean', 'std', 'avg_weight']), 0
    bins = frame.groupby(keys).agg(
        samples=(value_col, 'size'),
        mean=(value_col, 'mean'),
        std=(value_col, 'std'),
        avg_weight=('weight', 'mean'),
    ).reset_index()
    kept = bins[bins['samples'] >= min_samples]
    return kept, len(bins) - len(kept)


# --- Engine ---

class AutotuneEngine:
    """
    Suggests fuel_base or maf_scale corrections from one datalog and one tune.

    The dataset and store are read-only; export works on a deep copy.
    """

    def __init__(self, dataset, store):
        self.dataset = dataset
        self.store = store
        self.results = None

    @staticmethod
    def _failure(code, message, options):
        print(f"Autotune aborted: {message}")
        return {
            'status': 'Failure',
            'error_code': code,
            'error': message,
            'warnings': [],
            'options': options,
            'mode': options.get('mode'),
        }

    def _load_tables(self, mode, options):
        """Fetches and validates the axes and tables. Returns (tables, failure)."""
        store = self.store
        rpm_axis = store.get_array('base_spark_rpm_index')
        load_axis = store.get_array('base_spark_map_index')
        fuel_base = store.get_table('fuel_base')
        pe_load = store.get_array('pe_enable_load')
        pe_tps = store.get_array('pe_enable_tps')

        if rpm_axis is None or load_axis is None or fuel_base is None:
            return None, self._failure('missing_tables', 'Tune file is missing required base spark/fuel tables.', options)
        if not is_strictly_ascending(rpm_axis) or not is_strictly_ascending(load_axis):
            return None, self._failure('axis_not_ascending',
                                       'RPM/Load axis breakpoints must be strictly ascending.', options)
        if fuel_base.shape != (len(rpm_axis), len(load_axis)):
            return None, self._failure('table_dimension_mismatch',
                                       'fuel_base table dimensions do not match RPM/Load axes.', options)
        if pe_load is None or pe_tps is None or len(pe_load) != len(rpm_axis) or len(pe_tps) != len(rpm_axis):
            return None, self._failure('pe_enable_mismatch', 'PE enable tables do not match RPM axis length.', options)

        tables = {'rpm_axis': rpm_axis, 'load_axis': load_axis, 'fuel_base': fuel_base,
                  'pe_load': pe_load, 'pe_tps': pe_tps}

        if mode == 'maf_scale':
            maf_scale = store.get_array('maf_scale')
            if maf_scale is None:
                return None, self._failure('missing_maf_table', 'Tune file is missing the maf_scale table.', options)
            voltage_axis = get_maf_voltage_axis(store, len(maf_scale))
            if len(voltage_axis) != len(maf_scale):
                return None, self._failure('maf_axis_mismatch',
                                           'MAF voltage axis length does not match maf_scale table length.', options)
            if not is_strictly_ascending(voltage_axis):
                return None, self._failure('axis_not_ascending',
                                           'MAF voltage axis breakpoints must be strictly ascending.', options)
            tables['maf_scale'] = maf_scale
            tables['voltage_axis'] = voltage_axis
        return tables, None

    def _prepare_rows(self, tables, mode, min_hit_weight):
        """Bins, classifies and weight-filters the log rows."""
        frame = self.dataset.to_frame()
        counts = {'total_rows': len(frame)}

        core = frame[['rpm', 'load', 'lambda_measured', 'lambda_target']]
        valid = np.isfinite(core.to_numpy(dtype=float)).all(axis=1)
        rows = frame[valid].copy()
        skipped = int((~valid).sum())

        rpm_axis, load_axis = tables['rpm_axis'], tables['load_axis']
        rows['rpm_idx'] = axis_index(rows['rpm'], rpm_axis)
        rows['load_idx'] = axis_index(rows['load'], load_axis)

        hit_counts = np.zeros((len(rpm_axis), len(load_axis)), dtype=int)
        np.add.at(hit_counts, (rows['rpm_idx'].to_numpy(), rows['load_idx'].to_numpy()), 1)

        throttle = rows['throttle'].fillna(0.0)
        target = rows['lambda_target']
        pe_load = tables['pe_load'][rows['rpm_idx'].to_numpy()]
        pe_tps = tables['pe_tps'][rows['rpm_idx'].to_numpy()]
        rows['open_loop'] = ((target > 0) & (target < OPEN_LOOP_MAX_TARGET)
                             & (rows['load'].to_numpy() >= pe_load) & (throttle.to_numpy() >= pe_tps))

        bad_open = rows['open_loop'] & ~(rows['lambda_measured'] > 0)
        skipped += int(bad_open.sum())
        rows = rows[~bad_open].copy()

        rows['ratio'] = rows['lambda_measured'] / rows['lambda_target']
        trims = rows[['stft', 'ltft']].replace([np.inf, -np.inf], np.nan).fillna(0.0)
        rows['trim'] = trims['stft'] + trims['ltft']

        if mode == 'fuel_base':
            rows['weight'] = (axis_weight(rows['rpm'], rows['rpm_idx'], rpm_axis)
                              * axis_weight(rows['load'], rows['load_idx'], load_axis))
        else:
            voltage = rows['maf_voltage']
            has_voltage = np.isfinite(voltage.to_numpy(dtype=float))
            counts['rows_missing_maf_voltage'] = int((~has_voltage).sum())
            rows = rows[has_voltage].copy()
            rows['maf_idx'] = axis_index(rows['maf_voltage'], tables['voltage_axis'])
            rows['weight'] = axis_weight(rows['maf_voltage'], rows['maf_idx'], tables['voltage_axis'])
            maf_hits = np.zeros(len(tables['voltage_axis']), dtype=int)
            np.add.at(maf_hits, rows['maf_idx'].to_numpy(), 1)
            counts['maf_hit_counts'] = maf_hits

        below_weight = rows['weight'] < min_hit_weight
        counts['filtered_by_weight'] = int(below_weight.sum())
        rows = rows[~below_weight]

        counts['skipped_rows'] = skipped
        counts['open_loop_rows'] = int(rows['open_loop'].sum())
        counts['closed_loop_rows'] = int((~rows['open_loop']).sum())
        counts['hit_counts'] = hit_counts
        return rows, counts

    def analyze(self, min_samples=5, change_limit_percent=5.0, min_hit_weight=0.0, mode='fuel_base'):
        """
        Runs the autotune analysis.

        Args:
            min_samples (int): Minimum rows a cell needs before it is corrected.
            change_limit_percent (float): Largest change allowed per cell, as a
                percentage of the loaded tune's value. 0 disables the limit.
            min_hit_weight (float): 0..1; rows sitting closer to a bin edge than
                this are ignored.
            mode (str): 'fuel_base' or 'maf_scale'.

        Returns:
            dict: Results with 'status' of 'Success' or 'Failure'.
        """
        if mode not in MODES:
            raise ValueError(f"Unknown autotune mode '{mode}'. Expected one of {MODES}.")
        print(f" -> Initializing autotune analysis ({mode})...")
        options = {
            'mode': mode,
            'min_samples': max(1, int(min_samples)),
            'change_limit_percent': max(0.0, float(change_limit_percent)),
            'min_hit_weight': float(np.clip(min_hit_weight, 0.0, 1.0)),
        }

        if self.store is None or not self.store.is_loaded():
            self.results = self._failure('calibration_not_loaded',
                                         'Please load a tune file before running autotune.', options)
            return self.results
        if self.dataset is None or len(self.dataset) == 0:
            self.results = self._failure('no_log_rows',
                                         'No datalog data available. Load a datalog and try again.', options)
            return self.results

        required = list(REQUIRED_CHANNELS) + ([MAF_REQUIRED_CHANNEL] if mode == 'maf_scale' else [])
        missing = self.dataset.missing_channels(required)
        if missing:
            self.results = self._failure('missing_columns',
                                         f"The datalog is missing required columns: {', '.join(missing)}", options)
            return self.results

        tables, failure = self._load_tables(mode, options)
        if failure is not None:
            self.results = failure
            return self.results

        print(" -> Binning log rows by table cell...")
        rows, counts = self._prepare_rows(tables, mode, options['min_hit_weight'])

        if mode == 'fuel_base':
            keys = ['rpm_idx', 'load_idx']
            current = tables['fuel_base']
            axes = (tables['rpm_axis'], tables['load_axis'])
        else:
            keys = ['maf_idx']
            current = tables['maf_scale']
            axes = (tables['voltage_axis'],)

        print(" -> Summarizing open and closed loop bins...")
        open_bins, open_excluded = _summarize_bins(rows[rows['open_loop']], keys, 'ratio', options['min_samples'])
        closed_bins, closed_excluded = _summarize_bins(rows[~rows['open_loop']], keys, 'trim', options['min_samples'])

        open_summary = self._open_summary(open_bins, keys, current, axes)
        closed_summary = self._closed_summary(closed_bins, keys, current, axes)

        print(" -> Applying change limits...")
        corrected, corrections, warnings = self._apply_corrections(
            open_summary, closed_summary, current, options['change_limit_percent'])

        if open_excluded or closed_excluded:
            warnings.append(f"{open_excluded + closed_excluded} cells had fewer than "
                            f"{options['min_samples']} samples and were left unchanged.")
        if counts['filtered_by_weight']:
            warnings.append(f"{counts['filtered_by_weight']} rows were ignored for sitting near a cell edge.")

        clamped_cells = [cell for cell in corrections if cell.clamped]
        change_pct = _percent_change(corrected, current)

        results = {
            'status': 'Success',
            'error': None,
            'error_code': None,
            'warnings': warnings,
            'mode': mode,
            'options': options,
            'target_map_id': mode,
            'open_loop_summary': open_summary,
            'closed_loop_summary': closed_summary,
            'corrections': corrections,
            'modified_cell_count': len(corrections),
            'clamped_cells': clamped_cells,
            'current_table': current,
            'corrected_table': corrected,
            'change_pct_table': change_pct,
            'changed_mask': np.abs(change_pct) > CHANGE_EPSILON_PCT,
            'hit_counts': counts['hit_counts'],
            'rpm_axis': tables['rpm_axis'],
            'load_axis': tables['load_axis'],
            'total_rows': counts['total_rows'],
            'open_loop_rows': counts['open_loop_rows'],
            'closed_loop_rows': counts['closed_loop_rows'],
            'skipped_rows': counts['skipped_rows'],
            'filtered_by_weight': counts['filtered_by_weight'],
        }

        if mode == 'fuel_base':
            results['formatted_table'] = format_table_rows(corrected, decimals=1)
            results['results_fuel'] = table_to_dataframe(corrected, tables['rpm_axis'], tables['load_axis'], 2)
        else:
            results['formatted_table'] = [format_array(corrected, decimals=2)]
            results['voltage_axis'] = tables['voltage_axis']
            results['maf_hit_counts'] = counts['maf_hit_counts']
            results['rows_missing_maf_voltage'] = counts['rows_missing_maf_voltage']
            results['results_maf'] = pd.DataFrame({
                'voltage': tables['voltage_axis'],
                'current': current,
                'corrected': corrected,
                'change_pct': change_pct,
            })

        print(f" -> Autotune complete. {len(corrections)} cells modified, {len(clamped_cells)} clamped.")
        self.results = results
        return results

    # --- Summaries ---

    @staticmethod
    def _cell_location(row, keys, axes):
        index = tuple(int(row[k]) for k in keys)
        breakpoints = tuple(float(axis[i]) for axis, i in zip(axes, index))
        return index, breakpoints

    def _open_summary(self, bins, keys, current, axes):
        summary = []
        for _, row in bins.iterrows():
            index, breakpoints = self._cell_location(row, keys, axes)
            current_value = float(current[index])
            summary.append({
                'index': index,
                'breakpoints': breakpoints,
                'samples': int(row['samples']),
                'avg_weight': float(row['avg_weight']),
                'mean_ratio': float(row['mean']),
                'std_ratio': float(row['std']) if pd.notna(row['std']) else 0.0,
                'mean_error_pct': (float(row['mean']) - 1) * 100,
                'current_value': current_value,
                'suggested_value': current_value * float(row['mean']),
            })
        summary.sort(key=lambda entry: abs(entry['mean_error_pct']), reverse=True)
        return summary

    def _closed_summary(self, bins, keys, current, axes):
        summary = []
        for _, row in bins.iterrows():
            index, breakpoints = self._cell_location(row, keys, axes)
            current_value = float(current[index])
            summary.append({
                'index': index,
                'breakpoints': breakpoints,
                'samples': int(row['samples']),
                'avg_weight': float(row['avg_weight']),
                'mean_trim': float(row['mean']),
                'std_trim': float(row['std']) if pd.notna(row['std']) else 0.0,
                'current_value': current_value,
                'suggested_value': current_value * (1 + float(row['mean']) / 100),
            })
        summary.sort(key=lambda entry: abs(entry['mean_trim']), reverse=True)
        return summary

    @staticmethod
    def _apply_corrections(open_summary, closed_summary, current, change_limit):
        """
        Merges the summaries (open loop applied last, so it wins) and clamps each
        change against the value in the tune used for analysis.
        """
        modifications = {}
        for entry in closed_summary:
            modifications[entry['index']] = (entry, 'closed', entry['mean_trim'])
        for entry in open_summary:
            modifications[entry['index']] = (entry, 'open', entry['mean_ratio'])

        corrected = np.array(current, dtype=float, copy=True)
        corrections = []
        skipped_zero = 0
        for index, (entry, source, mean_value) in modifications.items():
            current_value = float(current[index])
            if not np.isfinite(current_value) or current_value == 0:
                skipped_zero += 1
                continue

            suggested = entry['suggested_value']
            change_pct = (suggested - current_value) / current_value * 100.0
            applied = suggested
            clamped = change_limit > 0 and abs(change_pct) > change_limit
            if clamped:
                direction = 1.0 if change_pct > 0 else -1.0
                applied = current_value * (1.0 + direction * change_limit / 100.0)

            corrected[index] = applied
            corrections.append(CorrectionCell(
                index=index,
                breakpoints=entry['breakpoints'],
                source=source,
                samples=entry['samples'],
                mean_value=mean_value,
                current_value=current_value,
                suggested_value=suggested,
                applied_value=applied,
                change_pct=change_pct,
                applied_change_pct=(applied - current_value) / current_value * 100.0,
                clamped=clamped,
            ))

        warnings = []
        if skipped_zero:
            warnings.append(f"{skipped_zero} cells with a zero or invalid current value were left unchanged.")
        return corrected, corrections, warnings

    # --- Export ---

    def _validate_base(self, base_store, result):
        if result['mode'] == 'fuel_base':
            analysis_shape = (len(result['rpm_axis']), len(result['load_axis']))
            base_table = base_store.get_table('fuel_base')
            base_rpm = base_store.get_array('base_spark_rpm_index')
            base_load = base_store.get_array('base_spark_map_index')
            base_shape = None if base_table is None else base_table.shape
            axes_match = (base_rpm is not None and base_load is not None
                          and (len(base_rpm), len(base_load)) == analysis_shape)
            if base_shape != analysis_shape or not axes_match:
                raise DimensionMismatchError(
                    'Base tune file fuel_base table dimensions do not match the tune file used for analysis.',
                    analysis_shape, base_shape)
        else:
            analysis_shape = (len(result['corrected_table']),)
            base_scale = base_store.get_array('maf_scale')
            base_shape = None if base_scale is None else (len(base_scale),)
            if base_shape != analysis_shape:
                raise DimensionMismatchError(
                    'Base tune file maf_scale table length does not match the tune file used for analysis.',
                    analysis_shape, base_shape)

    def export_corrected_calibration(self, result=None, base_document=None):
        """
        Writes the corrected table into a copy of a tune document.

        Args:
            result (dict, optional): An autotune result; defaults to the last one.
            base_document (dict|str|bytes, optional): Tune to merge into instead
                of the tune used for analysis. Its table shape must match.

        Returns:
            dict: The corrected tune document.

        Raises:
            ValueError: If there is no successful result to export.
            DimensionMismatchError: If the base tune's table shape differs.
            KeyError: If the target map is absent from the document.
        """
        result = result if result is not None else self.results
        if not result or result.get('status') != 'Success' or result.get('formatted_table') is None:
            raise ValueError('Run the autotune analysis before exporting a tune file.')

        if base_document is not None:
            base_store = CalibrationStore()
            if not base_store.parse(base_document):
                raise ValueError('Unable to parse base tune file data.')
            self._validate_base(base_store, result)
            document = base_store.get_raw_clone()
        else:
            if self.store is None or not self.store.is_loaded():
                raise ValueError('No tune file loaded. Please load a tune file or supply a base tune file.')
            document = self.store.get_raw_clone()

        map_id = result['target_map_id']
        target = next((m for m in document['maps'] if isinstance(m, dict) and m.get('id') == map_id), None)
        if target is None:
            raise KeyError(f"{map_id} map not found in tune file.")

        target.pop('value', None)
        target['data'] = list(result['formatted_table'])
        print(f" -> Wrote corrected {map_id} into tune document.")
        return document


# --- Main Orchestrator Function ---

def run_autotune_analysis(dataset, store, min_samples=5, change_limit_percent=5.0,
                          min_hit_weight=0.0, mode='fuel_base'):
    """Convenience wrapper returning (engine, results) so the caller can export later."""
    engine = AutotuneEngine(dataset, store)
    results = engine.analyze(min_samples=min_samples, change_limit_percent=change_limit_percent,
                             min_hit_weight=min_hit_weight, mode=mode)
    return engine, results
