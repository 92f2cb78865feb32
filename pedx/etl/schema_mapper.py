# =========================================
# 📄 File: pedx/etl/schema_mapper.py
# Purpose: Declarative per-file rules that turn parsed CSV rows into
#          (dimension, metric, value) facts for the analytics star schema
# =========================================
"""
Schema Mapper
-------------
 - MAPPING_RULES maps a known source filename to exactly one rule variant:
     DirectColumnRule    one column is the dimension value, metrics read per row
     BooleanCollapseRule N truthy/falsy columns collapse into one dimension axis
     CompositeKeyRule    dimension value joins several columns ("clear_day")
     SkipRule            known file with no aggregate counterpart (reason given)
 - Files without a rule are skipped explicitly; nothing is guessed.
 - Mapping is pure: no database access here.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pedx.errors import MappingSkipped, RowParseError
from pedx.etl.row_normalizer import TypedRow, clean_string, is_truthy

log = logging.getLogger(__name__)

VALUE_FIELDS = ("numeric", "percentage", "correlation")


@dataclass(frozen=True)
class MetricRule:
    column: str
    fact_type: str
    metric_name: str
    value_field: str = "numeric"


@dataclass(frozen=True)
class DirectColumnRule:
    dimension_type: str
    dimension_column: str
    metrics: Tuple[MetricRule, ...] = ()


@dataclass(frozen=True)
class BooleanCollapseRule:
    dimension_type: str
    columns: Tuple[str, ...]


@dataclass(frozen=True)
class CompositeKeyRule:
    dimension_type: str
    key_columns: Tuple[str, ...]
    metrics: Tuple[MetricRule, ...] = ()
    separator: str = "_"


@dataclass(frozen=True)
class SkipRule:
    reason: str


MappingRule = Union[DirectColumnRule, BooleanCollapseRule, CompositeKeyRule, SkipRule]


@dataclass(frozen=True)
class MappedFact:
    dimension_type: str
    dimension_value: str
    fact_type: str
    metric_name: str
    value: float
    value_field: str = "numeric"
    sample_size: Optional[int] = None


@dataclass
class MappingResult:
    source: str
    facts: List[MappedFact] = field(default_factory=list)
    row_errors: List[RowParseError] = field(default_factory=list)

    def dimension_values(self) -> set:
        return {f.dimension_value for f in self.facts}


# -----------------------
# Rule tables
# -----------------------
def _rate_pct() -> Tuple[MetricRule, ...]:
    return (
        MetricRule("risky_crossing_rate(%)", "statistic", "risky_crossing_rate", "percentage"),
        MetricRule("run_red_light_rate(%)", "statistic", "run_red_light_rate", "percentage"),
    )


def _rate_numeric() -> Tuple[MetricRule, ...]:
    return (
        MetricRule("risky_crossing", "statistic", "risky_crossing_rate"),
        MetricRule("run_red_light", "statistic", "run_red_light_rate"),
    )


CLOTHING_COLUMNS = (
    "short_sleeved_shirt", "long_sleeved_shirt", "short_sleeved_outwear",
    "long_sleeved_outwear", "vest", "sling", "shorts", "trousers", "skirt",
    "short_sleeved_dress", "long_sleeved_dress", "vest_dress", "sling_dress",
)
BELONGING_COLUMNS = ("backpack", "umbrella", "handbag", "suitcase")
VEHICLE_COLUMNS = (
    "ambulance", "army vehicle", "auto rickshaw", "bicycle", "bus", "car",
    "garbagevan", "human hauler", "minibus", "minivan", "motorbike", "pickup",
    "policecar", "rickshaw", "scooter", "suv", "taxi", "three wheelers -CNG-",
    "truck", "van", "wheelbarrow",
)
ROAD_CONDITION_COLUMNS = ("Longitudinal Crack", "Transverse Crack", "Alligator Crack", "Potholes")
ACCIDENT_COLUMNS = ("police_car", "Arrow Board", "cones", "accident")

_NO_SUMMARY = "No direct mapping to summary statistics"

# Summary statistics files (one row per dimension value)
SUMMARY_RULES: Dict[str, MappingRule] = {
    "accident_road_condition_stats.csv": DirectColumnRule("environment_factor", "environment_factor", _rate_pct()),
    "age_stats.csv": DirectColumnRule("age", "age", _rate_numeric()),
    "carried_items_stats.csv": DirectColumnRule("carried_item", "accessory", _rate_pct()),
    "clothing_stats.csv": DirectColumnRule("clothing_type", "clothing_type", _rate_pct()),
    "continent_stats.csv": DirectColumnRule("continent", "continent", _rate_pct()),
    "crossing_stats.csv": DirectColumnRule(
        "crossing_behavior",
        "continent",
        (
            MetricRule("avg_decision_time", "average", "decision_time"),
            MetricRule("avg_crossing_speed", "average", "crossing_speed"),
        ),
    ),
    "crosswalk_coeff.csv": DirectColumnRule(
        "crosswalk_metric",
        "continent",
        (
            MetricRule("crosswalk_usage_ratio", "ratio", "crosswalk_usage"),
            MetricRule("crosswalk_prob", "probability", "crosswalk_presence"),
            MetricRule("crosswalk_coeff", "coefficient", "crosswalk_coefficient"),
        ),
    ),
    "gender_stats.csv": DirectColumnRule("gender", "gender", _rate_numeric()),
    "phone_stats.csv": DirectColumnRule("phone_usage", "accessory", _rate_pct()),
    "road_corr.csv": DirectColumnRule(
        "road_metric",
        "index",
        (
            MetricRule("risky_crossing", "correlation", "risky_crossing_correlation", "correlation"),
            MetricRule("run_red_light", "correlation", "run_red_light_correlation", "correlation"),
        ),
    ),
    "time_stats.csv": DirectColumnRule(
        "time_metric",
        "index",
        (
            MetricRule("duration_minutes", "average", "duration_minutes"),
            MetricRule("analysis_minutes", "average", "analysis_minutes"),
        ),
    ),
    "vehicle_stats.csv": DirectColumnRule("vehicle_type", "vehicle_type", _rate_pct()),
    "weather_daytime_stats.csv": CompositeKeyRule(
        "weather_daytime",
        ("weather", "daytime"),
        (
            MetricRule("run_red_light_prob", "probability", "run_red_light_rate", "percentage"),
            MetricRule("risky_crossing_prob", "probability", "risky_crossing_rate", "percentage"),
        ),
    ),
}

# Per-city crawler exports (raw, frame/track level)
CRAWLER_RULES: Dict[str, MappingRule] = {
    "[P5]phone_usage.csv": BooleanCollapseRule("phone_usage", ("phone_using",)),
    "[P6]age_gender.csv": DirectColumnRule("gender", "gender"),
    "[P8]clothing.csv": BooleanCollapseRule("clothing_type", CLOTHING_COLUMNS),
    "[P9]pedestrian_belongings.csv": BooleanCollapseRule("carried_item", BELONGING_COLUMNS),
    "[E1]weather.csv": DirectColumnRule("weather_daytime", "weather_label"),
    "[E4]road_condition.csv": BooleanCollapseRule("environment_factor", ROAD_CONDITION_COLUMNS),
    "[E6]daytime.csv": DirectColumnRule("weather_daytime", "daytime_label"),
    "[E8]accident_detection.csv": BooleanCollapseRule("environment_factor", ACCIDENT_COLUMNS),
    "[C9]crossing_env_info.csv": CompositeKeyRule("weather_daytime", ("weather", "daytime")),
    "[V1]vehicle_type.csv": BooleanCollapseRule("vehicle_type", VEHICLE_COLUMNS),
    "[V6]vehicle_count.csv": DirectColumnRule(
        "vehicle_type", "Vehicle_Type", (MetricRule("Count", "statistic", "vehicle_count"),)
    ),
    "[A1]video_info.csv": SkipRule("Per-city copy of all_video_info.csv, loaded by the core stage"),
    "[A2]pedestrian_info.csv": SkipRule("Per-city copy of all_pedestrian_info.csv, loaded by the core stage"),
    "[B1]tracked_pedestrians.csv": SkipRule(_NO_SUMMARY),
    "[C1]risky_crossing.csv": SkipRule("Raw crossing data, no direct mapping"),
    "[C3]crossing_judge.csv": SkipRule(_NO_SUMMARY),
    "[C4]crosswalk_usage.csv": SkipRule("Raw crosswalk data, no direct mapping"),
    "[C5]red_light_runner.csv": SkipRule("Raw red light data, no direct mapping"),
    "[C6]crossing_ve_count.csv": SkipRule(_NO_SUMMARY),
    "[C7]crossing_pe_info.csv": SkipRule(_NO_SUMMARY),
    "[C10]nearby_count.csv": SkipRule(_NO_SUMMARY),
    "[E2]traffic_light.csv": SkipRule(_NO_SUMMARY),
    "[E3]traffic_sign.csv": SkipRule(_NO_SUMMARY),
    "[E5]road_width.csv": SkipRule(
        "Road width feeds road_corr.csv only after a correlation calculation"
    ),
    "[E7]crosswalk_detection.csv": SkipRule(_NO_SUMMARY),
    "[E9]sidewalk_detection.csv": SkipRule(_NO_SUMMARY),
}

MAPPING_RULES: Dict[str, MappingRule] = {**SUMMARY_RULES, **CRAWLER_RULES}


def rule_for(source: str, rules: Optional[Dict[str, MappingRule]] = None) -> MappingRule:
    """
    Return the rule for a source file (matched on its base name).
    Raises MappingSkipped for SkipRule entries and for files with no rule at all.
    """
    rules = MAPPING_RULES if rules is None else rules
    name = source.replace("\\", "/").rsplit("/", 1)[-1]
    rule = rules.get(name)
    if rule is None:
        raise MappingSkipped(source, "No mapping rule for this file")
    if isinstance(rule, SkipRule):
        raise MappingSkipped(source, rule.reason)
    return rule


# -----------------------
# Transform modes
# -----------------------
def _metric_facts(row: TypedRow, dimension_type, dimension_value, metrics, result):
    for metric in metrics:
        if not row.has(metric.column):
            continue
        try:
            value = row.number(metric.column)
        except RowParseError as e:
            result.row_errors.append(e)
            continue
        if value is None:
            continue
        result.facts.append(
            MappedFact(dimension_type, dimension_value, metric.fact_type,
                       metric.metric_name, value, metric.value_field)
        )


def _observed_counts(dimension_type: str, counts: Counter, rows_read: int) -> List[MappedFact]:
    # Sorted so the output does not depend on row order
    return [
        MappedFact(dimension_type, value, "statistic", "observed_count",
                   float(count), "numeric", rows_read)
        for value, count in sorted(counts.items())
    ]


def _map_direct(rule: DirectColumnRule, rows: List[TypedRow], result: MappingResult) -> None:
    counts: Counter = Counter()
    for row in rows:
        value = row.text(rule.dimension_column)
        if value is None:
            result.row_errors.append(
                RowParseError(result.source, row.row_number, rule.dimension_column,
                              row.raw(rule.dimension_column), "missing dimension value")
            )
            continue
        if rule.metrics:
            _metric_facts(row, rule.dimension_type, value, rule.metrics, result)
        else:
            counts[value] += 1
    if not rule.metrics:
        result.facts.extend(_observed_counts(rule.dimension_type, counts, len(rows)))


def _map_composite(rule: CompositeKeyRule, rows: List[TypedRow], result: MappingResult) -> None:
    counts: Counter = Counter()
    for row in rows:
        parts = [row.text(c) for c in rule.key_columns]
        value = rule.separator.join(p for p in parts if p)
        if not value:
            result.row_errors.append(
                RowParseError(result.source, row.row_number, "+".join(rule.key_columns),
                              None, "missing composite dimension value")
            )
            continue
        if rule.metrics:
            _metric_facts(row, rule.dimension_type, value, rule.metrics, result)
        else:
            counts[value] += 1
    if not rule.metrics:
        result.facts.extend(_observed_counts(rule.dimension_type, counts, len(rows)))


def _map_boolean_collapse(rule: BooleanCollapseRule, rows: List[TypedRow], result: MappingResult) -> None:
    """Each column seen truthy at least once becomes one dimension value (the column name)."""
    counts: Counter = Counter()
    for row in rows:
        for column in rule.columns:
            if is_truthy(row.raw(column)):
                counts[column] += 1
    result.facts.extend(_observed_counts(rule.dimension_type, counts, len(rows)))


_DISPATCH = {
    DirectColumnRule: _map_direct,
    CompositeKeyRule: _map_composite,
    BooleanCollapseRule: _map_boolean_collapse,
}


def map_rows(source: str, rows: Iterable, rules: Optional[Dict[str, MappingRule]] = None) -> MappingResult:
    """
    Apply the rule registered for `source` to its rows.

    `rows` may be a ParsedCsv, TypedRows, or plain dicts. Raises MappingSkipped
    when there is no applicable rule; cell-level problems land in row_errors.
    """
    rule = rule_for(source, rules)
    typed = []
    for number, row in enumerate(rows, start=1):
        typed.append(row if isinstance(row, TypedRow) else TypedRow(row, source, number))
    result = MappingResult(source)
    _DISPATCH[type(rule)](rule, typed, result)
    log.debug(f"{source}: {len(result.facts)} facts, {len(result.row_errors)} row errors")
    return result


def dimension_description(dimension_type: str, dimension_value: str) -> str:
    return f"Auto-generated dimension for {dimension_type}: {clean_string(dimension_value)}"
