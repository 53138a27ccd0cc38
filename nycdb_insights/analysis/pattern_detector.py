"""
Threshold rules over analysis results.

The detector is deterministic and stateless: the same analysis always yields
the same findings in the same order. Every finding carries the threshold that
triggered it in its supporting data.
"""

import logging
from typing import Any, Dict, List, Optional

from nycdb_insights.analysis.statistical_analyzer import to_number
from nycdb_insights.core.models import (
    AnalysisResult,
    Importance,
    Intent,
    PatternFinding,
    PatternReport,
    StructuredQuery,
)

logger = logging.getLogger(__name__)


# Risk
BOROUGH_CONCENTRATION_PCT = 40
RISK_AGE_CONCENTRATION_PCT = 50
RISK_CLASS_CONCENTRATION_PCT = 30
EXTREME_RISK_SCORE = 90
NEW_BUILDING_YEAR = 2000

# Trend
SIGNIFICANT_CHANGE_PCT = 20
CONSECUTIVE_RUN = 3

# Violation
DOMINANT_TYPE_PCT = 30
HIGH_VIOLATION_MULTIPLIER = 2
CLUSTER_SHARE_RATIO = 1.5

# Building
BUILDING_AGE_CONCENTRATION_PCT = 50
BUILDING_TYPE_CONCENTRATION_PCT = 40
TALL_BUILDING_MULTIPLIER = 2
LARGE_BUILDING_MULTIPLIER = 3

# Comparison
DISPARITY_RATIO = 1.5
HIGH_VIOLATION_RATE_MULTIPLIER = 2

# General
HIGH_VIOLATION_DENSITY = 5
AGING_STOCK_YEARS = 75


class PatternDetector:
    """Applies per-intent threshold rules to an AnalysisResult."""

    def __init__(self):
        self._rules = {
            Intent.RISK_ASSESSMENT: self._detect_risk_patterns,
            Intent.TREND_ANALYSIS: self._detect_trend_patterns,
            Intent.VIOLATION_SEARCH: self._detect_violation_patterns,
            Intent.BUILDING_LOOKUP: self._detect_building_patterns,
            Intent.COMPARISON: self._detect_comparison_patterns,
            Intent.GENERAL_STATS: self._detect_general_patterns,
        }

    def detect(self, query: StructuredQuery, analysis: AnalysisResult) -> PatternReport:
        """
        Detect patterns in an analysis.

        Args:
            query: Structured query the analysis answers
            analysis: Analysis result to inspect

        Returns:
            PatternReport (empty for intents without rules)
        """
        report = PatternReport()
        rule = self._rules.get(analysis.intent)
        if rule is not None:
            rule(analysis, report)

        logger.info(
            f"Detected {len(report.all_findings())} pattern(s) for {analysis.intent.value} "
            f"query '{query.original_query[:60]}'"
        )
        return report

    def _detect_risk_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        factors = analysis.get("high_risk_patterns", {}).get("common_factors", [])

        for factor in factors:
            share = factor["percentage"]
            if factor["factor"] == "Borough" and share > BOROUGH_CONCENTRATION_PCT:
                report.significant_patterns.append(PatternFinding(
                    kind="geographic_concentration",
                    description=f"{share}% of high-risk buildings are located in {factor['value']}",
                    importance=Importance.HIGH,
                    supporting_data={**factor, "threshold": BOROUGH_CONCENTRATION_PCT},
                ))
            elif factor["factor"] == "Age Range" and share > RISK_AGE_CONCENTRATION_PCT:
                report.significant_patterns.append(PatternFinding(
                    kind="age_concentration",
                    description=f"{share}% of high-risk buildings were built {factor['value']}",
                    importance=Importance.HIGH,
                    supporting_data={**factor, "threshold": RISK_AGE_CONCENTRATION_PCT},
                ))
            elif factor["factor"] == "Building Class" and share > RISK_CLASS_CONCENTRATION_PCT:
                report.significant_patterns.append(PatternFinding(
                    kind="building_type_concentration",
                    description=f"{share}% of high-risk buildings have building class {factor['value']}",
                    importance=Importance.MEDIUM,
                    supporting_data={**factor, "threshold": RISK_CLASS_CONCENTRATION_PCT},
                ))

        for building in analysis.get("top_risk_buildings", []):
            label = building.get("address") or building.get("bbl")
            score = building.get("risk_score", 0)
            if score > EXTREME_RISK_SCORE:
                report.anomalies.append(PatternFinding(
                    kind="extreme_risk_score",
                    description=f"Building at {label} has an extremely high risk score of {score}",
                    importance=Importance.HIGH,
                    supporting_data={
                        "bbl": building.get("bbl"),
                        "address": building.get("address"),
                        "risk_score": score,
                        "threshold": EXTREME_RISK_SCORE,
                    },
                ))

            year_built = to_number(building.get("yearbuilt")) or 0
            if year_built > NEW_BUILDING_YEAR:
                report.anomalies.append(PatternFinding(
                    kind="new_building_high_risk",
                    description=f"Building at {label} was built in {int(year_built)} but is rated high risk",
                    importance=Importance.HIGH,
                    supporting_data={
                        "bbl": building.get("bbl"),
                        "address": building.get("address"),
                        "yearbuilt": int(year_built),
                        "risk_score": score,
                        "threshold": NEW_BUILDING_YEAR,
                    },
                ))

    def _detect_trend_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        stats = analysis.get("trend_stats", {})
        trend = stats.get("trend")
        if trend:
            change = stats.get("percent_change")
            if change is None:
                description = (
                    f"Overall {trend} trend from {stats['first_value']} to {stats['last_value']} "
                    f"over {stats['period_count']} periods"
                )
            else:
                description = (
                    f"Overall {trend} trend with a {abs(change)}% change "
                    f"over {stats['period_count']} periods"
                )
            report.significant_patterns.append(PatternFinding(
                kind="overall_trend",
                description=description,
                importance=Importance.HIGH,
                supporting_data={
                    "trend": trend,
                    "percent_change": change,
                    "first_value": stats.get("first_value"),
                    "last_value": stats.get("last_value"),
                    "threshold": 0,
                },
            ))

        changes = analysis.get("significant_changes", [])
        if changes:
            largest = max(changes, key=lambda c: abs(c["percent_change"]))
            report.anomalies.append(PatternFinding(
                kind="significant_change",
                description=(
                    f"Largest change: a {abs(largest['percent_change'])}% {largest['direction']} "
                    f"from {largest['previous_period']} to {largest['period']}"
                ),
                importance=Importance.HIGH,
                supporting_data={**largest, "threshold": SIGNIFICANT_CHANGE_PCT},
            ))

        for direction, run in self._longest_runs(changes).items():
            if len(run) < CONSECUTIVE_RUN:
                continue
            kind = "consecutive_increases" if direction == "increase" else "consecutive_decreases"
            report.significant_patterns.append(PatternFinding(
                kind=kind,
                description=(
                    f"{len(run)} consecutive significant {direction}s "
                    f"from {run[0]['previous_period']} to {run[-1]['period']}"
                ),
                importance=Importance.MEDIUM,
                supporting_data={
                    "count": len(run),
                    "start_period": run[0]["previous_period"],
                    "end_period": run[-1]["period"],
                    "threshold": CONSECUTIVE_RUN,
                },
            ))

        seasonality = analysis.get("time_series_analysis", {})
        if seasonality.get("seasonality_status") == "detected":
            report.seasonality = PatternFinding(
                kind="seasonal_pattern",
                description=seasonality["seasonality"],
                importance=Importance.MEDIUM,
                supporting_data={
                    "seasonal_months": seasonality.get("seasonal_months", []),
                    "threshold": SIGNIFICANT_CHANGE_PCT,
                },
            )

    @staticmethod
    def _longest_runs(changes: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Longest run of back-to-back significant changes in each direction."""
        longest: Dict[str, List[Dict[str, Any]]] = {}
        run: List[Dict[str, Any]] = []
        for change in changes:
            contiguous = (
                run
                and run[-1]["direction"] == change["direction"]
                and run[-1]["period"] == change["previous_period"]
            )
            run = run + [change] if contiguous else [change]
            if len(run) > len(longest.get(change["direction"], [])):
                longest[change["direction"]] = run
        return longest

    def _detect_violation_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        stats = analysis.get("violation_stats", {})
        total = stats.get("total_violations", 0)

        if total:
            for entry in analysis.get("top_violation_types", []):
                share = round(entry["count"] / total * 100, 1)
                if share > DOMINANT_TYPE_PCT:
                    report.significant_patterns.append(PatternFinding(
                        kind="dominant_violation_type",
                        description=f"Violation type '{entry['type']}' accounts for {share}% of violations",
                        importance=Importance.HIGH,
                        supporting_data={
                            "type": entry["type"],
                            "count": entry["count"],
                            "percentage": share,
                            "threshold": DOMINANT_TYPE_PCT,
                        },
                    ))

        buildings = analysis.get("buildings_with_multiple_violations", [])
        if not buildings:
            return

        counts = [b["violation_count"] for b in buildings]
        average = sum(counts) / len(counts)
        for building in buildings:
            if building["violation_count"] > HIGH_VIOLATION_MULTIPLIER * average:
                report.anomalies.append(PatternFinding(
                    kind="high_violation_count",
                    description=(
                        f"Building at {building.get('address') or building['bbl']} has "
                        f"{building['violation_count']} violations, over twice the average of {average:.1f}"
                    ),
                    importance=Importance.HIGH,
                    supporting_data={
                        "bbl": building["bbl"],
                        "address": building.get("address"),
                        "violation_count": building["violation_count"],
                        "average": round(average, 2),
                        "threshold": HIGH_VIOLATION_MULTIPLIER,
                    },
                ))

        total_counted = sum(counts)
        by_borough: Dict[str, Dict[str, int]] = {}
        for building in buildings:
            borough = building.get("borough") or "Unknown"
            entry = by_borough.setdefault(borough, {"buildings": 0, "violations": 0})
            entry["buildings"] += 1
            entry["violations"] += building["violation_count"]

        for borough, entry in by_borough.items():
            violation_share = entry["violations"] / total_counted
            building_share = entry["buildings"] / len(buildings)
            if violation_share > CLUSTER_SHARE_RATIO * building_share:
                report.clusters.append(PatternFinding(
                    kind="violation_cluster",
                    description=(
                        f"{borough} has {round(violation_share * 100, 1)}% of violations "
                        f"but only {round(building_share * 100, 1)}% of buildings with multiple violations"
                    ),
                    importance=Importance.MEDIUM,
                    supporting_data={
                        "borough": borough,
                        "violation_share": round(violation_share * 100, 1),
                        "building_share": round(building_share * 100, 1),
                        "threshold": CLUSTER_SHARE_RATIO,
                    },
                ))

    def _detect_building_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        stats = analysis.get("building_stats", {})
        total = stats.get("total_buildings", 0)
        if not total:
            return

        for entry in analysis.visualization_data.get("buildings_by_age", []):
            share = round(entry["value"] / total * 100, 1)
            if share > BUILDING_AGE_CONCENTRATION_PCT:
                report.significant_patterns.append(PatternFinding(
                    kind="age_concentration",
                    description=f"{share}% of buildings were built {entry['category']}",
                    importance=Importance.MEDIUM,
                    supporting_data={
                        "age_range": entry["category"],
                        "count": entry["value"],
                        "percentage": share,
                        "threshold": BUILDING_AGE_CONCENTRATION_PCT,
                    },
                ))

        for building_class, count in stats.get("building_types", {}).items():
            share = round(count / total * 100, 1)
            if share > BUILDING_TYPE_CONCENTRATION_PCT:
                report.significant_patterns.append(PatternFinding(
                    kind="building_type_concentration",
                    description=f"{share}% of buildings have building class {building_class}",
                    importance=Importance.MEDIUM,
                    supporting_data={
                        "building_class": building_class,
                        "count": count,
                        "percentage": share,
                        "threshold": BUILDING_TYPE_CONCENTRATION_PCT,
                    },
                ))

        average_floors = stats.get("average_floors", 0)
        average_units = stats.get("average_units", 0)
        for building in analysis.get("buildings", []):
            label = building.get("address") or building.get("bbl")
            floors = to_number(building.get("numfloors"))
            units = to_number(building.get("unitsres"))

            if average_floors and floors and floors > TALL_BUILDING_MULTIPLIER * average_floors:
                report.anomalies.append(PatternFinding(
                    kind="unusually_tall_buildings",
                    description=f"Building at {label} has {floors:g} floors against an average of {average_floors}",
                    importance=Importance.LOW,
                    supporting_data={
                        "bbl": building.get("bbl"),
                        "numfloors": floors,
                        "average_floors": average_floors,
                        "threshold": TALL_BUILDING_MULTIPLIER,
                    },
                ))

            if average_units and units and units > LARGE_BUILDING_MULTIPLIER * average_units:
                report.anomalies.append(PatternFinding(
                    kind="unusually_large_buildings",
                    description=f"Building at {label} has {units:g} units against an average of {average_units}",
                    importance=Importance.LOW,
                    supporting_data={
                        "bbl": building.get("bbl"),
                        "unitsres": units,
                        "average_units": average_units,
                        "threshold": LARGE_BUILDING_MULTIPLIER,
                    },
                ))

    def _detect_comparison_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        for difference in analysis.get("significant_differences", []):
            if difference["ratio"] < DISPARITY_RATIO:
                continue
            metric = difference["metric"].replace("_", " ")
            report.significant_patterns.append(PatternFinding(
                kind="category_disparity",
                description=(
                    f"{difference['max_category']} has {difference['ratio']}x the {metric} "
                    f"of {difference['min_category']}"
                ),
                importance=Importance.MEDIUM,
                supporting_data={**difference, "threshold": DISPARITY_RATIO},
            ))

        rows = analysis.get("comparison_data", [])
        comparison_by = analysis.get("comparison_by")
        rates = []
        for row in rows:
            buildings = to_number(row.get("building_count")) or 0
            violations = (to_number(row.get("hpd_violation_count")) or 0) + (to_number(row.get("dob_violation_count")) or 0)
            rates.append((row.get(comparison_by), buildings, violations))

        total_buildings = sum(r[1] for r in rates)
        total_violations = sum(r[2] for r in rates)
        if not total_buildings or not total_violations:
            return

        overall = total_violations / total_buildings
        for category, buildings, violations in rates:
            if not buildings:
                continue
            rate = violations / buildings
            if rate > HIGH_VIOLATION_RATE_MULTIPLIER * overall:
                report.anomalies.append(PatternFinding(
                    kind="high_violation_rate",
                    description=(
                        f"{category} has {rate:.2f} violations per building against "
                        f"{overall:.2f} overall"
                    ),
                    importance=Importance.HIGH,
                    supporting_data={
                        "category": category,
                        "violations_per_building": round(rate, 2),
                        "overall_rate": round(overall, 2),
                        "threshold": HIGH_VIOLATION_RATE_MULTIPLIER,
                    },
                ))

    def _detect_general_patterns(self, analysis: AnalysisResult, report: PatternReport) -> None:
        derived = analysis.get("derived_stats", {})

        density = derived.get("violations_per_building", 0)
        if density >= HIGH_VIOLATION_DENSITY:
            report.anomalies.append(PatternFinding(
                kind="high_violation_density",
                description=f"Buildings average {density:.2f} violations each",
                importance=Importance.MEDIUM,
                supporting_data={"violations_per_building": density, "threshold": HIGH_VIOLATION_DENSITY},
            ))

        average_age = derived.get("average_building_age", 0)
        if average_age >= AGING_STOCK_YEARS:
            report.significant_patterns.append(PatternFinding(
                kind="aging_building_stock",
                description=f"The average building is {average_age:.0f} years old",
                importance=Importance.MEDIUM,
                supporting_data={"average_building_age": average_age, "threshold": AGING_STOCK_YEARS},
            ))


def top_finding(report: Optional[PatternReport]) -> Optional[PatternFinding]:
    """Highest-importance finding in a report, first one wins on ties."""
    if report is None:
        return None
    order = {Importance.HIGH: 0, Importance.MEDIUM: 1, Importance.LOW: 2}
    findings = report.all_findings()
    if not findings:
        return None
    return min(findings, key=lambda f: order[f.importance])
