"""Chart configurations built from analysis results."""

import logging
from typing import Any, Dict, List

from nycdb_insights.core.models import AnalysisResult, Intent, Visualization

logger = logging.getLogger(__name__)


RISK_COLORS = ["#d9534f", "#f0ad4e", "#5bc0de", "#5cb85c"]

COMPARISON_TITLES = {
    "building_count": "Building Count by Category",
    "avg_year_built": "Average Year Built by Category",
    "avg_floors": "Average Floors by Category",
    "avg_residential_units": "Average Residential Units by Category",
    "hpd_violation_count": "HPD Violations by Category",
    "dob_violation_count": "DOB Violations by Category",
}


def _label(key: str) -> str:
    return key.replace("_", " ").title()


def _category_config(x_label: str = None, y_label: str = None, **extra) -> Dict[str, Any]:
    config: Dict[str, Any] = {"labels": {"category_key": "category", "value_key": "value"}}
    if x_label:
        config["x_axis_label"] = x_label
    if y_label:
        config["y_axis_label"] = y_label
    config.update(extra)
    return config


def _table_config(columns: List[tuple]) -> Dict[str, Any]:
    return {"columns": [{"key": key, "label": label} for key, label in columns]}


class VisualizationGenerator:
    """
    Builds chart configs for each intent.

    A chart is only emitted when its source series or table is present and
    non-empty.
    """

    def __init__(self):
        self._builders = {
            Intent.RISK_ASSESSMENT: self._risk_charts,
            Intent.TREND_ANALYSIS: self._trend_charts,
            Intent.VIOLATION_SEARCH: self._violation_charts,
            Intent.BUILDING_LOOKUP: self._building_charts,
            Intent.COMPARISON: self._comparison_charts,
            Intent.GENERAL_STATS: self._general_stats_charts,
        }

    def generate(self, analysis: AnalysisResult) -> List[Visualization]:
        """
        Generate chart configs for an analysis.

        Args:
            analysis: Analysis result with visualization series

        Returns:
            Chart configs in display order
        """
        builder = self._builders.get(analysis.intent)
        if builder is None:
            return []
        charts = builder(analysis, analysis.visualization_data)
        logger.debug(f"Generated {len(charts)} chart(s) for {analysis.intent.value}")
        return charts

    def _risk_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        if series.get("risk_distribution"):
            charts.append(Visualization(
                type="pie",
                title="Risk Level Distribution",
                data=series["risk_distribution"],
                config=_category_config(colors=RISK_COLORS),
            ))
        if series.get("risk_by_borough"):
            charts.append(Visualization(
                type="bar",
                title="High Risk Buildings by Borough",
                data=[{"category": p["borough"], "value": p["high_risk_count"]} for p in series["risk_by_borough"]],
                config=_category_config("Borough", "Number of High Risk Buildings"),
            ))
        if series.get("risk_by_building_age"):
            charts.append(Visualization(
                type="bar",
                title="Risk Level by Building Age",
                data=[{"category": p["age_range"], "value": p["high_risk_count"]} for p in series["risk_by_building_age"]],
                config=_category_config("Building Age", "Number of High Risk Buildings"),
            ))

        top = analysis.get("top_risk_buildings", [])
        if top:
            charts.append(Visualization(
                type="table",
                title="Top High Risk Buildings",
                data=[
                    {
                        "address": b.get("address"),
                        "borough": b.get("borough"),
                        "year_built": b.get("yearbuilt"),
                        "risk_score": round(b["risk_score"], 1),
                        "risk_level": b["risk_level"],
                    }
                    for b in top[:10]
                ],
                config=_table_config([
                    ("address", "Address"), ("borough", "Borough"), ("year_built", "Year Built"),
                    ("risk_score", "Risk Score"), ("risk_level", "Risk Level"),
                ]),
            ))
        return charts

    def _trend_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        if series.get("trend_line"):
            charts.append(Visualization(
                type="line",
                title="Trend Over Time",
                data=series["trend_line"],
                config={"labels": {"category_key": "date", "value_key": "value"},
                        "x_axis_label": "Date", "y_axis_label": "Count"},
            ))
        if series.get("moving_average"):
            charts.append(Visualization(
                type="line",
                title="Moving Average (3-month)",
                data=series["moving_average"],
                config={"labels": {"category_key": "date", "value_key": "value"},
                        "x_axis_label": "Date", "y_axis_label": "Average Count"},
            ))
        if series.get("year_over_year_comparison"):
            charts.append(Visualization(
                type="grouped_bar",
                title="Year-over-Year Comparison",
                data=[
                    {"category": p["date"], "current_year": p["current_value"], "previous_year": p["previous_value"]}
                    for p in series["year_over_year_comparison"]
                ],
                config={"labels": {"category_key": "category", "value_keys": ["current_year", "previous_year"]},
                        "x_axis_label": "Month", "y_axis_label": "Count", "is_grouped": True},
            ))

        changes = analysis.get("significant_changes", [])
        if changes:
            charts.append(Visualization(
                type="table",
                title="Significant Changes",
                data=[
                    {
                        "period": c["period"],
                        "previous_period": c["previous_period"],
                        "previous_value": c["previous_value"],
                        "current_value": c["current_value"],
                        "percent_change": f"{c['percent_change']}%",
                        "direction": c["direction"],
                    }
                    for c in changes
                ],
                config=_table_config([
                    ("period", "Period"), ("previous_value", "Previous Value"),
                    ("current_value", "Current Value"), ("percent_change", "Change"),
                    ("direction", "Direction"),
                ]),
            ))
        return charts

    def _violation_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        if series.get("violations_by_type"):
            charts.append(Visualization(
                type="bar",
                title="Top Violation Types",
                data=series["violations_by_type"],
                config=_category_config("Violation Type", "Count", is_horizontal=True),
            ))
        if series.get("violations_by_source"):
            charts.append(Visualization(
                type="pie", title="Violations by Source",
                data=series["violations_by_source"], config=_category_config(),
            ))
        if series.get("violations_by_status"):
            charts.append(Visualization(
                type="pie", title="Violations by Status",
                data=series["violations_by_status"], config=_category_config(),
            ))

        buildings = analysis.get("buildings_with_multiple_violations", [])
        if buildings:
            charts.append(Visualization(
                type="table",
                title="Buildings with Multiple Violations",
                data=[
                    {
                        "address": b.get("address"),
                        "borough": b.get("borough"),
                        "violation_count": b["violation_count"],
                        "bbl": b["bbl"],
                    }
                    for b in buildings
                ],
                config=_table_config([
                    ("address", "Address"), ("borough", "Borough"), ("violation_count", "Violation Count"),
                ]),
            ))
        return charts

    def _building_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        if series.get("buildings_by_type"):
            charts.append(Visualization(
                type="pie", title="Buildings by Type",
                data=series["buildings_by_type"], config=_category_config(),
            ))
        if series.get("buildings_by_age"):
            charts.append(Visualization(
                type="bar", title="Buildings by Age",
                data=series["buildings_by_age"], config=_category_config("Age Range", "Count"),
            ))
        if series.get("buildings_by_size"):
            charts.append(Visualization(
                type="bar", title="Buildings by Size",
                data=series["buildings_by_size"], config=_category_config("Size (Floors)", "Count"),
            ))

        buildings = analysis.get("buildings", [])
        if buildings:
            charts.append(Visualization(
                type="table",
                title="Building Details",
                data=[
                    {
                        "address": b.get("address"),
                        "borough": b.get("borough"),
                        "year_built": b.get("yearbuilt"),
                        "floors": b.get("numfloors"),
                        "units": b.get("unitsres"),
                        "building_class": b.get("bldgclass"),
                    }
                    for b in buildings
                ],
                config=_table_config([
                    ("address", "Address"), ("borough", "Borough"), ("year_built", "Year Built"),
                    ("floors", "Floors"), ("units", "Units"), ("building_class", "Building Class"),
                ]),
            ))
        return charts

    def _comparison_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        for metric, data in series.items():
            if not data:
                continue
            charts.append(Visualization(
                type="bar",
                title=COMPARISON_TITLES.get(metric, f"{metric.replace('_', ' ')} by Category"),
                data=data,
                config=_category_config("Category", metric.replace("_", " ")),
            ))

        rows = analysis.get("comparison_data", [])
        if rows:
            charts.append(Visualization(
                type="table",
                title="Comparison Data",
                data=rows,
                config=_table_config([(key, _label(key)) for key in rows[0]]),
            ))
        return charts

    def _general_stats_charts(self, analysis: AnalysisResult, series: Dict[str, List[Dict]]) -> List[Visualization]:
        charts = []
        if series.get("violation_distribution"):
            charts.append(Visualization(
                type="pie", title="Violation Distribution",
                data=series["violation_distribution"], config=_category_config(),
            ))

        stats = analysis.get("general_stats", {})
        if stats:
            table = [{"metric": _label(k), "value": v} for k, v in stats.items()]
            table += [{"metric": _label(k), "value": v} for k, v in analysis.get("derived_stats", {}).items()]
            charts.append(Visualization(
                type="table",
                title="General Statistics",
                data=table,
                config=_table_config([("metric", "Metric"), ("value", "Value")]),
            ))
        return charts
