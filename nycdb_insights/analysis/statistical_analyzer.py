"""
Statistical analysis of query results.

Each intent has an analysis routine that turns result rows into a statistics
bundle plus chart-ready series. Every routine accepts zero rows and then
returns zeroed or empty structures with no chart series.
"""

import logging
from collections import Counter
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from nycdb_insights.core.models import AnalysisResult, Intent

logger = logging.getLogger(__name__)


RISK_LEVELS = ["High", "Medium", "Low", "Minimal"]
AGE_RANGES = ["Pre-1900", "1900-1950", "1951-1980", "1981-2000", "Post-2000"]
SIZE_BANDS = ["1-5 floors", "6-10 floors", "11-20 floors", "21+ floors"]
COMPARISON_METRICS = [
    "building_count",
    "avg_year_built",
    "avg_floors",
    "avg_residential_units",
    "hpd_violation_count",
    "dob_violation_count",
]
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

SIGNIFICANT_CHANGE_PCT = 20
SEASONAL_DEVIATION_PCT = 20
SIGNIFICANT_DIFFERENCE_RATIO = 1.5
MIN_PERIODS_YEAR_OVER_YEAR = 13
MIN_PERIODS_SEASONALITY = 24


def age_score(age: float) -> float:
    """Age component of the risk score (10 to 100)."""
    if age >= 100:
        return 100
    if age <= 10:
        return 10
    return 10 + (age - 10)


def violation_score(violation_count: float) -> float:
    """Violation component of the risk score (0 to 100)."""
    if violation_count <= 0:
        return 0
    return min(violation_count * 5, 100)


def risk_score(age: float, violation_count: float) -> float:
    """Mean of the age and violation scores."""
    return (age_score(age) + violation_score(violation_count)) / 2


def risk_level(score: float) -> str:
    if score >= 80:
        return "High"
    if score >= 50:
        return "Medium"
    if score >= 20:
        return "Low"
    return "Minimal"


def age_range(year_built: Optional[float]) -> Optional[str]:
    """Era bucket for a construction year; None when the year is unknown."""
    if not year_built:
        return None
    if year_built < 1900:
        return "Pre-1900"
    if year_built <= 1950:
        return "1900-1950"
    if year_built <= 1980:
        return "1951-1980"
    if year_built <= 2000:
        return "1981-2000"
    return "Post-2000"


def size_band(floors: Optional[float]) -> Optional[str]:
    if floors is None or floors <= 0:
        return None
    if floors <= 5:
        return "1-5 floors"
    if floors <= 10:
        return "6-10 floors"
    if floors <= 20:
        return "11-20 floors"
    return "21+ floors"


def to_number(value: Any) -> Optional[float]:
    """Coerce a cell to a float; None for missing or non-numeric values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if np.isnan(number):
        return None
    return number


def percentage(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 1)


def calculate_average(rows: List[Dict[str, Any]], field: str) -> float:
    """Average of a field over all rows, counting unreadable values as zero."""
    if not rows:
        return 0.0
    total = sum(to_number(row.get(field)) or 0 for row in rows)
    return round(total / len(rows), 2)


def calculate_basic_statistics(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Record count, field list and per-field numeric summaries.

    Boolean fields are not treated as numeric. The standard deviation is the
    population standard deviation, computed in two passes.
    """
    stats: Dict[str, Any] = {"record_count": len(rows), "fields": [], "numerical_stats": {}}
    if not rows:
        return stats

    df = pd.DataFrame(rows)
    stats["fields"] = [str(column) for column in df.columns]

    for column in df.columns:
        series = df[column]
        if pd.api.types.is_bool_dtype(series) or not pd.api.types.is_numeric_dtype(series):
            continue

        values = series.dropna().to_numpy(dtype=float)
        if len(values) == 0:
            continue

        total = float(values.sum())
        mean = total / len(values)
        std_dev = float(np.sqrt(((values - mean) ** 2).sum() / len(values)))

        stats["numerical_stats"][str(column)] = {
            "count": int(len(values)),
            "sum": total,
            "avg": mean,
            "min": float(values.min()),
            "max": float(values.max()),
            "std_dev": std_dev,
        }

    return stats


class StatisticalAnalyzer:
    """
    Computes intent-specific statistics over result rows.

    Routines are selected from a dispatch table keyed by intent; intents
    without a routine get the generic summary.
    """

    def __init__(self, today_provider: Callable[[], date] = date.today):
        """
        Initialize the analyzer.

        Args:
            today_provider: Returns "today"; building ages are measured from its year
        """
        self.today_provider = today_provider
        self._routines = {
            Intent.RISK_ASSESSMENT: self._analyze_risk,
            Intent.TREND_ANALYSIS: self._analyze_trend,
            Intent.VIOLATION_SEARCH: self._analyze_violations,
            Intent.BUILDING_LOOKUP: self._analyze_buildings,
            Intent.COMPARISON: self._analyze_comparison,
            Intent.GENERAL_STATS: self._analyze_general_stats,
        }
        logger.info("StatisticalAnalyzer initialized")

    def analyze(self, intent: Intent, rows: List[Dict[str, Any]]) -> AnalysisResult:
        """
        Analyze result rows for an intent.

        Args:
            intent: Intent of the question
            rows: Result rows from the data store

        Returns:
            AnalysisResult with details, chart series and basic statistics
        """
        rows = rows or []
        routine = self._routines.get(intent, self._analyze_generic)
        details, visualization_data = routine(rows)

        # Series without data are not charted
        visualization_data = {name: series for name, series in visualization_data.items() if series}

        logger.info(f"Analyzed {len(rows)} rows for {intent.value}")
        return AnalysisResult(
            intent=intent,
            details=details,
            visualization_data=visualization_data,
            basic_stats=calculate_basic_statistics(rows),
        )

    @property
    def current_year(self) -> int:
        return self.today_provider().year

    # ------------------------------------------------------------------
    # Risk assessment
    # ------------------------------------------------------------------

    def score_building(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Attach age, violation and risk scores to a building row."""
        # A missing or zero construction year counts as year 0
        year_built = to_number(row.get("yearbuilt")) or 0
        violations = to_number(row.get("total_violations")) or 0
        building_age = self.current_year - year_built

        a_score = age_score(building_age)
        v_score = violation_score(violations)
        score = (a_score + v_score) / 2

        scored = dict(row)
        scored.update({
            "age_score": a_score,
            "violation_score": v_score,
            "risk_score": score,
            "risk_level": risk_level(score),
        })
        return scored

    def _analyze_risk(self, rows):
        scored = [self.score_building(row) for row in rows]
        total = len(scored)

        level_counts = {level: 0 for level in RISK_LEVELS}
        for building in scored:
            level_counts[building["risk_level"]] += 1
        level_percentages = {level: percentage(count, total) for level, count in level_counts.items()}

        high_risk = sorted(
            (b for b in scored if b["risk_level"] == "High"),
            key=lambda b: b["risk_score"],
            reverse=True,
        )

        risk_stats = {
            "total_buildings": total,
            "risk_level_counts": level_counts,
            "risk_level_percentages": level_percentages,
            "high_risk_count": level_counts["High"],
            "high_risk_percentage": level_percentages["High"],
            "medium_risk_count": level_counts["Medium"],
            "medium_risk_percentage": level_percentages["Medium"],
        }

        visualization = {}
        if total:
            visualization["risk_distribution"] = [
                {"category": level, "value": count} for level, count in level_counts.items()
            ]

        common_factors = []
        if high_risk:
            borough_counts = Counter(b.get("borough") or "Unknown" for b in high_risk)
            age_counts = Counter(age_range(to_number(b.get("yearbuilt"))) for b in high_risk)
            class_counts = Counter(b.get("bldgclass") or "Unknown" for b in high_risk)
            high_total = len(high_risk)

            for borough, count in borough_counts.items():
                common_factors.append({
                    "factor": "Borough", "value": borough, "count": count,
                    "percentage": percentage(count, high_total),
                })
            for era in AGE_RANGES:
                if age_counts.get(era):
                    common_factors.append({
                        "factor": "Age Range", "value": era, "count": age_counts[era],
                        "percentage": percentage(age_counts[era], high_total),
                    })
            for building_class, count in class_counts.items():
                common_factors.append({
                    "factor": "Building Class", "value": building_class, "count": count,
                    "percentage": percentage(count, high_total),
                })

            visualization["risk_by_borough"] = [
                {"borough": borough, "high_risk_count": count}
                for borough, count in borough_counts.most_common()
            ]
            visualization["risk_by_building_age"] = [
                {"age_range": era, "high_risk_count": age_counts.get(era, 0)} for era in AGE_RANGES
            ]

        details = {
            "risk_stats": risk_stats,
            "scored_buildings": scored,
            "top_risk_buildings": high_risk[:10],
            "high_risk_patterns": {"common_factors": common_factors},
        }
        return details, visualization

    # ------------------------------------------------------------------
    # Trend analysis
    # ------------------------------------------------------------------

    def _analyze_trend(self, rows):
        details: Dict[str, Any] = {
            "trend_stats": {
                "period_count": 0,
                "first_period": None,
                "last_period": None,
                "first_value": 0,
                "last_value": 0,
                "percent_change": None,
                "trend": None,
            },
            "significant_changes": [],
            "moving_average": [],
            "year_over_year": [],
            "time_series_analysis": {
                "seasonality_status": "insufficient_data",
                "seasonality": "Insufficient data for seasonality analysis",
                "seasonal_months": [],
            },
        }
        if not rows:
            return details, {}

        df = pd.DataFrame(rows)
        if "time_period" not in df.columns:
            df["time_period"] = None
        df["_period"] = pd.to_datetime(df["time_period"], errors="coerce")
        df["_value"] = [to_number(v) or 0 for v in df.get("count", pd.Series([0] * len(df)))]
        df = df.sort_values("_period", kind="stable").reset_index(drop=True)

        periods = df["time_period"].tolist()
        values = df["_value"].tolist()
        first_value, last_value = values[0], values[-1]
        difference = last_value - first_value

        if difference > 0:
            trend = "increasing"
        elif difference < 0:
            trend = "decreasing"
        else:
            trend = "stable"

        details["trend_stats"] = {
            "period_count": len(values),
            "first_period": periods[0],
            "last_period": periods[-1],
            "first_value": first_value,
            "last_value": last_value,
            "percent_change": round(difference / first_value * 100, 1) if first_value else None,
            "trend": trend,
        }

        for i in range(1, len(values)):
            previous, current = values[i - 1], values[i]
            if previous == 0:
                continue
            change = round((current - previous) / previous * 100, 1)
            if abs(change) >= SIGNIFICANT_CHANGE_PCT:
                details["significant_changes"].append({
                    "period": periods[i],
                    "previous_period": periods[i - 1],
                    "previous_value": previous,
                    "current_value": current,
                    "percent_change": change,
                    "direction": "increase" if change >= 0 else "decrease",
                })

        details["moving_average"] = [
            {"date": periods[i], "value": (values[i] + values[i - 1] + values[i - 2]) / 3}
            for i in range(2, len(values))
        ]

        if len(values) >= MIN_PERIODS_YEAR_OVER_YEAR:
            details["year_over_year"] = [
                {
                    "date": df["_period"][i].strftime("%b") if pd.notna(df["_period"][i]) else periods[i],
                    "current_value": values[i],
                    "previous_value": values[i - 12],
                }
                for i in range(12, len(values))
            ]

        if len(values) >= MIN_PERIODS_SEASONALITY:
            details["time_series_analysis"] = self._seasonality(df)

        visualization = {
            "trend_line": [{"date": p, "value": v} for p, v in zip(periods, values)],
            "moving_average": details["moving_average"],
            "year_over_year_comparison": details["year_over_year"],
        }
        return details, visualization

    @staticmethod
    def _seasonality(df: pd.DataFrame) -> Dict[str, Any]:
        """Compare monthly averages against the mean of the non-zero monthly averages."""
        dated = df[df["_period"].notna()]
        monthly = dated.groupby(dated["_period"].dt.month)["_value"].mean()
        non_zero = monthly[monthly != 0]

        seasonal_months = []
        if len(non_zero):
            overall = float(non_zero.mean())
            for month, value in non_zero.items():
                deviation = round((float(value) - overall) / overall * 100, 1)
                if abs(deviation) >= SEASONAL_DEVIATION_PCT:
                    seasonal_months.append({
                        "month": MONTH_NAMES[int(month) - 1],
                        "deviation": deviation,
                        "direction": "above average" if deviation >= 0 else "below average",
                    })

        if seasonal_months:
            described = ", ".join(
                f"{m['month']} ({m['deviation']}% {m['direction']})" for m in seasonal_months
            )
            return {
                "seasonality_status": "detected",
                "seasonality": f"Seasonal pattern detected with {described}",
                "seasonal_months": seasonal_months,
            }
        return {
            "seasonality_status": "not_detected",
            "seasonality": "No clear seasonal pattern detected",
            "seasonal_months": [],
        }

    # ------------------------------------------------------------------
    # Violation search
    # ------------------------------------------------------------------

    def _analyze_violations(self, rows):
        by_source = Counter(row.get("source") or "Unknown" for row in rows)
        by_status = Counter(row.get("violationstatus") or "Unknown" for row in rows)
        by_type = Counter(row.get("violationtype") or "Unknown" for row in rows)

        top_types = [{"type": t, "count": c} for t, c in by_type.most_common(10)]

        by_building: Dict[Any, Dict[str, Any]] = {}
        for row in rows:
            bbl = row.get("bbl")
            if not bbl:
                continue
            building = by_building.setdefault(bbl, {
                "bbl": bbl,
                "address": row.get("address"),
                "borough": row.get("borough"),
                "violation_count": 0,
                "violations": [],
            })
            building["violation_count"] += 1
            building["violations"].append({
                "id": row.get("violationid"),
                "type": row.get("violationtype"),
                "status": row.get("violationstatus"),
                "date": row.get("issueddate"),
                "source": row.get("source"),
            })

        multiple = sorted(
            (b for b in by_building.values() if b["violation_count"] > 1),
            key=lambda b: b["violation_count"],
            reverse=True,
        )

        details = {
            "violation_stats": {
                "total_violations": len(rows),
                "violations_by_source": dict(by_source),
                "violations_by_status": dict(by_status),
                "violations_by_type": dict(by_type),
            },
            "top_violation_types": top_types,
            "buildings_with_multiple_violations": multiple,
        }
        visualization = {
            "violations_by_type": [{"category": t["type"], "value": t["count"]} for t in top_types],
            "violations_by_source": [{"category": s, "value": c} for s, c in by_source.most_common()],
            "violations_by_status": [{"category": s, "value": c} for s, c in by_status.most_common()],
        }
        return details, visualization

    # ------------------------------------------------------------------
    # Building lookup
    # ------------------------------------------------------------------

    def _analyze_buildings(self, rows):
        building_types = Counter(row.get("bldgclass") or "Unknown" for row in rows)

        details = {
            "building_stats": {
                "total_buildings": len(rows),
                "average_year_built": calculate_average(rows, "yearbuilt"),
                "average_floors": calculate_average(rows, "numfloors"),
                "average_units": calculate_average(rows, "unitsres"),
                "building_types": dict(building_types),
            },
            "buildings": rows[:10],
        }

        visualization = {}
        if rows:
            ages = Counter(age_range(to_number(row.get("yearbuilt"))) for row in rows)
            sizes = Counter(size_band(to_number(row.get("numfloors"))) for row in rows)
            visualization = {
                "buildings_by_type": [
                    {"category": t, "value": c} for t, c in building_types.most_common()
                ],
                "buildings_by_age": [{"category": era, "value": ages.get(era, 0)} for era in AGE_RANGES],
                "buildings_by_size": [{"category": band, "value": sizes.get(band, 0)} for band in SIZE_BANDS],
            }
        return details, visualization

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def _analyze_comparison(self, rows):
        comparison_by = next(iter(rows[0]), None) if rows else None

        significant_differences = []
        visualization = {}
        for metric in COMPARISON_METRICS:
            points = [
                (row.get(comparison_by), to_number(row.get(metric)))
                for row in rows
            ]
            points = [(category, value) for category, value in points if value is not None]
            if not points:
                continue

            visualization[metric] = sorted(
                ({"category": category, "value": value} for category, value in points),
                key=lambda p: p["value"],
                reverse=True,
            )

            if len(points) < 2:
                continue
            max_category, max_value = max(points, key=lambda p: p[1])
            min_category, min_value = min(points, key=lambda p: p[1])
            if min_value > 0 and max_value >= SIGNIFICANT_DIFFERENCE_RATIO * min_value:
                significant_differences.append({
                    "metric": metric,
                    "max_category": max_category,
                    "max_value": max_value,
                    "min_category": min_category,
                    "min_value": min_value,
                    "ratio": round(max_value / min_value, 2),
                })

        details = {
            "comparison_by": comparison_by,
            "comparison_stats": {
                "total_categories": len(rows),
                "comparison_metrics": list(COMPARISON_METRICS),
            },
            "significant_differences": significant_differences,
            "comparison_data": rows,
        }
        return details, visualization

    # ------------------------------------------------------------------
    # General statistics
    # ------------------------------------------------------------------

    def _analyze_general_stats(self, rows):
        data = rows[0] if rows else {}

        buildings = to_number(data.get("total_buildings")) or 0
        units = to_number(data.get("total_residential_units")) or 0
        hpd = to_number(data.get("total_hpd_violations")) or 0
        dob = to_number(data.get("total_dob_violations")) or 0
        oldest = to_number(data.get("oldest_building"))
        newest = to_number(data.get("newest_building"))
        avg_year = to_number(data.get("avg_year_built"))

        derived_stats = {
            "average_units_per_building": units / buildings if buildings else 0,
            "violations_per_building": (hpd + dob) / buildings if buildings else 0,
            "building_age_range": newest - oldest if oldest is not None and newest is not None else 0,
            "average_building_age": self.current_year - avg_year if avg_year else 0,
        }

        visualization = {}
        if rows:
            visualization["violation_distribution"] = [
                {"category": "HPD Violations", "value": hpd},
                {"category": "DOB Violations", "value": dob},
            ]

        details = {"general_stats": data, "derived_stats": derived_stats}
        return details, visualization

    def _analyze_generic(self, rows):
        return {"record_count": len(rows), "sample": rows[:10]}, {}
