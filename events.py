"""
Event Detection Module

A single threshold-classification and temporal-grouping engine shared by every
monitored quantity (AFR, boost, fuel trims, temperatures, knock). Each domain
supplies a DomainConfig; the engine turns the log into classified samples,
merges contiguous significant samples into events, drops transients shorter
than the domain's minimum duration, and coalesces nearby events of the same
classification into event groups.

Durations account for each sample covering a finite interval rather than an
instant, so a single sample lasts one sampling interval.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import numpy as np

DURATION_EPSILON = 1e-9


@dataclass
class Sample:
    time: float
    metric: float
    classification: str
    significant: bool
    context: dict = field(default_factory=dict)


@dataclass
class Event:
    start_time: float
    end_time: float
    duration: float
    classification: str
    severity: str
    representative: Sample
    samples: list
    context: dict = field(default_factory=dict)


@dataclass
class EventGroup:
    time: float
    end_time: float
    duration: float
    classification: str
    severity: str
    max_metric: float
    avg_metric: float
    avg_metric_abs: float
    representative: Sample
    context: dict
    event_count: int
    sample_count: int
    events: list = field(default_factory=list)
    details: dict = field(default_factory=dict)


def _abs_metric(sample):
    return abs(sample.metric)


@dataclass
class DomainConfig:
    """
    Everything that distinguishes one monitored quantity from another.

    metric(row) returns the per-row error signal, or None to drop the row.
    classify(metric, row) returns (classification, is_significant).
    severity_key(sample) orders samples so that larger means more severe.
    """
    name: str
    required_fields: tuple
    metric: Callable
    classify: Callable
    error_message: str
    context_fields: tuple = ('rpm', 'throttle', 'load')
    regime: Optional[Callable] = None
    run_gap: float = 0.5
    split_on_classification: bool = True
    min_duration: Union[None, float, dict] = None
    coalesce_window: float = 1.0
    severity_key: Callable = _abs_metric
    severity_label: Optional[Callable] = None
    in_target: Optional[Callable] = None
    summarize: Optional[Callable] = None
    group_details: Optional[Callable] = None

    def minimum_duration_for(self, classification):
        if self.min_duration is None:
            return None
        if isinstance(self.min_duration, dict):
            return self.min_duration.get(classification)
        return self.min_duration

    def label(self, sample):
        if self.severity_label is None:
            return 'normal' if sample.classification == 'normal' else 'high'
        return self.severity_label(sample)


# --- Helper Functions ---

def event_duration(start_time, end_time, sample_count, avg_interval):
    """Span of a run plus one sampling interval, floored at count * interval."""
    span = (end_time - start_time) + avg_interval
    return max(span, sample_count * avg_interval, avg_interval)


def _mean(values):
    return float(np.mean(values)) if len(values) else 0.0


def _average_context(contexts):
    if not contexts:
        return {}
    keys = contexts[0].keys()
    return {key: _mean([ctx.get(key, 0.0) for ctx in contexts]) for key in keys}


def percent_time_where(samples, predicate, time_range):
    """
    Share of the log's time range spent while predicate(sample) held.

    Each gap between consecutive samples is attributed to the earlier one.
    """
    total_time = time_range[1] - time_range[0]
    if total_time <= 0 or len(samples) < 2:
        return 0.0
    accumulated = 0.0
    for previous, current in zip(samples, samples[1:]):
        if predicate(previous):
            accumulated += current.time - previous.time
    return accumulated / total_time * 100


def build_samples(rows, config):
    """Applies the regime filter and classification to every row."""
    samples = []
    for row in rows:
        if config.regime is not None and not config.regime(row):
            continue
        metric = config.metric(row)
        if metric is None or not np.isfinite(metric):
            continue
        classification, significant = config.classify(metric, row)
        context = {}
        for name in config.context_fields:
            value = getattr(row, name, None)
            context[name] = float(value) if value is not None else 0.0
        samples.append(Sample(row.time, float(metric), classification, bool(significant), context))
    samples.sort(key=lambda s: s.time)
    return samples


def group_runs(samples, config):
    """Splits the sample stream into runs of contiguous significant samples."""
    runs = []
    current = []
    for sample in samples:
        if not sample.significant:
            if current:
                runs.append(current)
                current = []
            continue
        if current:
            gap = sample.time - current[-1].time
            changed = config.split_on_classification and sample.classification != current[-1].classification
            if gap > config.run_gap or changed:
                runs.append(current)
                current = []
        current.append(sample)
    if current:
        runs.append(current)
    return runs


def build_event(run, config, avg_interval):
    representative = max(run, key=config.severity_key)
    start, end = run[0].time, run[-1].time
    return Event(
        start_time=start,
        end_time=end,
        duration=event_duration(start, end, len(run), avg_interval),
        classification=representative.classification,
        severity=config.label(representative),
        representative=representative,
        samples=run,
        context=_average_context([s.context for s in run]),
    )


def split_by_duration(events, config):
    """Returns (kept, dropped) according to the per-classification minimum duration."""
    kept, dropped = [], []
    for event in events:
        minimum = config.minimum_duration_for(event.classification)
        if minimum is not None and event.duration + DURATION_EPSILON < minimum:
            dropped.append(event)
        else:
            kept.append(event)
    return kept, dropped


def _group_duration(events, avg_interval):
    durations = [e.duration for e in events]
    if all(d is not None and d > 0 for d in durations):
        return float(sum(durations))
    span = events[-1].start_time - events[0].start_time
    per_member = span / (len(events) - 1) if len(events) > 1 else avg_interval
    return max(span + per_member, avg_interval)


def build_group(events, config, avg_interval):
    lead = max(events, key=lambda e: config.severity_key(e.representative))
    representative = lead.representative
    metrics = [e.representative.metric for e in events]
    group = EventGroup(
        time=events[0].start_time,
        end_time=max(e.end_time for e in events),
        duration=_group_duration(events, avg_interval),
        classification=events[0].classification,
        severity=config.label(representative),
        max_metric=representative.metric,
        avg_metric=_mean(metrics),
        avg_metric_abs=_mean([abs(m) for m in metrics]),
        representative=representative,
        context=_average_context([e.representative.context for e in events]),
        event_count=len(events),
        sample_count=sum(len(e.samples) for e in events),
        events=events,
    )
    if config.group_details is not None:
        group.details = config.group_details(group)
    return group


def coalesce_events(events, config, avg_interval):
    """Groups same-classification events whose start times lie within the coalescing window."""
    by_class = {}
    for event in sorted(events, key=lambda e: e.start_time):
        by_class.setdefault(event.classification, []).append(event)

    groups = []
    for class_events in by_class.values():
        current = [class_events[0]]
        for event in class_events[1:]:
            if event.start_time - current[-1].start_time <= config.coalesce_window:
                current.append(event)
            else:
                groups.append(build_group(current, config, avg_interval))
                current = [event]
        groups.append(build_group(current, config, avg_interval))

    groups.sort(key=lambda g: g.time)
    return groups


def _empty_statistics(config, dataset):
    statistics = {
        'total_samples': 0,
        'total_data_points': 0,
        'avg_metric': 0.0,
        'avg_metric_abs': 0.0,
        'max_metric': 0.0,
        'min_metric': 0.0,
        'in_target_percent': 0.0,
        'total_events': 0,
        'event_counts': {},
        'dropped_transients': 0,
        'time_range': dataset.time_range,
    }
    if config.summarize is not None:
        statistics.update(config.summarize([], dataset))
    return statistics


def compute_statistics(valid_samples, kept_events, dropped_events, groups, config, dataset):
    statistics = _empty_statistics(config, dataset)
    kept_samples = [s for e in kept_events for s in e.samples]
    metrics = [s.metric for s in kept_samples]

    statistics['total_samples'] = len(valid_samples)
    statistics['total_data_points'] = len(kept_samples)
    if metrics:
        statistics['avg_metric'] = _mean(metrics)
        statistics['avg_metric_abs'] = _mean([abs(m) for m in metrics])
        statistics['max_metric'] = float(max(metrics))
        statistics['min_metric'] = float(min(metrics))

    if kept_samples:
        in_target = config.in_target or (lambda s: not s.significant)
        statistics['in_target_percent'] = sum(1 for s in kept_samples if in_target(s)) / len(kept_samples) * 100

    event_counts = {}
    for group in groups:
        event_counts[group.classification] = event_counts.get(group.classification, 0) + 1
    statistics['event_counts'] = event_counts
    statistics['total_events'] = len(groups)
    statistics['dropped_transients'] = len(dropped_events)

    if config.summarize is not None:
        statistics.update(config.summarize(valid_samples, dataset))
    return statistics


# --- Engine ---

class EventDetectionEngine:
    """
    Runs one DomainConfig over a LogDataset. The last result is cached; the
    get_* accessors run analyze() on first use.
    """

    def __init__(self, dataset, config):
        self.dataset = dataset
        self.config = config
        self.results = None

    def _resolved_columns(self):
        fields = list(self.config.required_fields) + [
            f for f in self.config.context_fields if f not in self.config.required_fields]
        return {name: self.dataset.column_for(name) for name in fields}

    def _failure(self, message):
        return {
            'status': 'Failure',
            'domain': self.config.name,
            'event_groups': [],
            'events': [],
            'statistics': _empty_statistics(self.config, self.dataset),
            'resolved_columns': self._resolved_columns(),
            'error': message,
            'warnings': [],
        }

    def analyze(self):
        config = self.config
        print(f" -> Initializing {config.name} analysis...")

        if len(self.dataset) == 0:
            self.results = self._failure('No datalog data available. Please load a datalog first.')
            return self.results

        missing = self.dataset.missing_channels(config.required_fields)
        if missing:
            print(f"Warning: {config.name} analysis missing channels: {', '.join(missing)}")
            self.results = self._failure(config.error_message)
            return self.results

        avg_interval = self.dataset.avg_sampling_interval
        samples = build_samples(self.dataset.rows, config)
        runs = group_runs(samples, config)
        events = [build_event(run, config, avg_interval) for run in runs]
        kept, dropped = split_by_duration(events, config)
        print(f" -> {len(events)} raw events detected, {len(dropped)} dropped as transients.")

        groups = coalesce_events(kept, config, avg_interval) if kept else []
        print(f" -> {len(groups)} event groups after coalescing.")

        warnings = []
        if not samples:
            warnings.append(f"No log rows fell inside the {config.name} analysis regime.")

        self.results = {
            'status': 'Success',
            'domain': config.name,
            'event_groups': groups,
            'events': kept,
            'statistics': compute_statistics(samples, kept, dropped, groups, config, self.dataset),
            'resolved_columns': self._resolved_columns(),
            'error': None,
            'warnings': warnings,
        }
        print(f" -> {config.name} analysis complete.")
        return self.results

    def _ensure_results(self):
        if self.results is None:
            self.analyze()
        return self.results

    def get_statistics(self):
        return self._ensure_results()['statistics']

    def get_events(self):
        return self._ensure_results()['event_groups']

    def get_columns(self):
        return self._ensure_results()['resolved_columns']
