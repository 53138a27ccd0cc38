"""
Query compiler for structured questions.

Turns a StructuredQuery into a parameter-bound SQL query against the NYC
building tables (pluto, hpd_violations, dob_violations, dob_permits). Each
intent has its own query shape; entity values and explicit filters become
WHERE predicates with ``$n`` placeholders. Table and column names are
checked against an allow-list and are never taken from user text unchecked.
"""

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from nycdb_insights.core.models import (
    CompiledQuery,
    Filter,
    Intent,
    Join,
    Predicate,
    StructuredQuery,
)

logger = logging.getLogger(__name__)


ALLOWED_COLUMNS: Dict[str, Set[str]] = {
    "pluto": {
        "bbl", "address", "borough", "block", "lot", "bldgclass", "landuse",
        "yearbuilt", "numfloors", "unitsres", "unitstotal", "assesstot",
        "exemptland", "exempttot", "zipcode",
    },
    "hpd_violations": {
        "id", "violationid", "bbl", "issueddate", "violationstatus",
        "violationtype", "novdescription",
    },
    "dob_violations": {
        "id", "violationid", "bbl", "issueddate", "violationstatus",
        "violationtype", "description",
    },
    "dob_permits": {
        "id", "bbl", "issueddate", "jobtype", "permittype", "permitstatus", "worktype",
    },
}

NUMERIC_COLUMNS = {
    "yearbuilt", "numfloors", "unitsres", "unitstotal", "assesstot",
    "exemptland", "exempttot", "block", "lot",
}

BUILDING_CLASS_CODES = {
    "residential": "R",
    "commercial": "C",
    "mixed use": "M",
}

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Columns that only exist on one side of the violation UNION
UNION_ONLY_COLUMNS = {"novdescription", "description"}

BUILDING_VIOLATION_JOINS = [
    Join(table="hpd_violations", alias="hv", on="p.bbl = hv.bbl"),
    Join(table="dob_violations", alias="dv", on="p.bbl = dv.bbl"),
]
BUILDING_VIOLATION_ALIASES = {"pluto": "p", "hpd_violations": "hv", "dob_violations": "dv"}


class QueryCompiler:
    """
    Compiles StructuredQuery objects into CompiledQuery objects.

    Compilation never raises for a well-formed query: filters that cannot be
    applied to the chosen shape are logged and reported in
    ``CompiledQuery.skipped_filters``.
    """

    def __init__(self):
        self._builders = {
            Intent.RISK_ASSESSMENT: self._compile_risk_assessment,
            Intent.TREND_ANALYSIS: self._compile_trend_analysis,
            Intent.VIOLATION_SEARCH: self._compile_violation_search,
            Intent.BUILDING_LOOKUP: self._compile_building_lookup,
            Intent.COMPARISON: self._compile_comparison,
            Intent.GENERAL_STATS: self._compile_general_stats,
        }
        logger.info("QueryCompiler initialized")

    def compile(self, query: StructuredQuery) -> CompiledQuery:
        """
        Compile a structured query.

        Args:
            query: Interpreted question

        Returns:
            CompiledQuery with SQL text and bound parameters
        """
        builder = self._builders.get(query.intent, self._compile_building_lookup)
        compiled = builder(query)

        if compiled.skipped_filters:
            logger.warning(
                f"Skipped {len(compiled.skipped_filters)} filter(s) "
                f"not applicable to {query.intent.value} query"
            )
        logger.info(
            f"Compiled {query.intent.value} query with {len(compiled.predicates)} "
            f"predicate(s) and {len(compiled.params)} parameter(s)"
        )
        return compiled

    # ------------------------------------------------------------------
    # Query shapes
    # ------------------------------------------------------------------

    def _compile_risk_assessment(self, query: StructuredQuery) -> CompiledQuery:
        predicates, params, skipped = self._build_predicates(
            query, BUILDING_VIOLATION_ALIASES, event_table="hpd_violations"
        )
        where = self._where(predicates)
        params.append(query.limit)
        limit_placeholder = f"${len(params)}"

        group_by = ["p.bbl", "p.address", "p.borough", "p.block", "p.lot", "p.bldgclass", "p.yearbuilt"]
        order_by = "total_violations DESC"
        sql = f"""
            SELECT
                p.bbl,
                p.address,
                p.borough,
                p.block,
                p.lot,
                p.bldgclass,
                p.yearbuilt,
                COUNT(DISTINCT hv.id) AS hpd_violation_count,
                COUNT(DISTINCT dv.id) AS dob_violation_count,
                (COUNT(DISTINCT hv.id) + COUNT(DISTINCT dv.id)) AS total_violations
            FROM pluto p
            LEFT JOIN hpd_violations hv ON p.bbl = hv.bbl
            LEFT JOIN dob_violations dv ON p.bbl = dv.bbl
            WHERE {where}
            GROUP BY {', '.join(group_by)}
            ORDER BY {order_by}
            LIMIT {limit_placeholder}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=["pluto", "hpd_violations", "dob_violations"],
            joins=list(BUILDING_VIOLATION_JOINS),
            predicates=predicates,
            group_by=group_by,
            order_by=order_by,
            limit=query.limit,
            skipped_filters=skipped,
        )

    def _compile_trend_analysis(self, query: StructuredQuery) -> CompiledQuery:
        table = self._trend_table(query)
        aliases = {table: "t", "pluto": "p"}
        predicates, params, skipped = self._build_predicates(query, aliases, event_table=table)
        where = self._where(predicates)

        joins = []
        tables = [table]
        if any(f.table == "pluto" for p in predicates for f in p.filters):
            joins.append(Join(table="pluto", alias="p", on="t.bbl = p.bbl"))
            tables.append("pluto")

        join_sql = "".join(f"\n            JOIN {j.table} {j.alias} ON {j.on}" for j in joins)
        group_by = ["DATE_TRUNC('month', t.issueddate)"]
        order_by = "time_period ASC"
        sql = f"""
            SELECT
                DATE_TRUNC('month', t.issueddate) AS time_period,
                COUNT(*) AS count
            FROM {table} t{join_sql}
            WHERE {where}
            GROUP BY {group_by[0]}
            ORDER BY {order_by}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=tables,
            joins=joins,
            predicates=predicates,
            group_by=group_by,
            order_by=order_by,
            limit=None,
            skipped_filters=skipped,
        )

    def _compile_violation_search(self, query: StructuredQuery) -> CompiledQuery:
        aliases = {"pluto": "p", "hpd_violations": "v", "dob_violations": "v"}
        predicates, params, skipped = self._build_predicates(
            query,
            aliases,
            event_table="hpd_violations",
            include_violation_type=True,
            excluded_columns=UNION_ONLY_COLUMNS,
        )
        where = self._where(predicates)
        params.append(query.limit)
        limit_placeholder = f"${len(params)}"

        order_by = "issueddate DESC"
        # Both halves share the WHERE clause and therefore the same $n placeholders
        sql = f"""
            SELECT
                'HPD' AS source,
                CAST(v.violationid AS VARCHAR) AS violationid,
                v.bbl,
                p.address,
                p.borough,
                v.issueddate,
                v.violationstatus,
                v.violationtype,
                v.novdescription AS description
            FROM hpd_violations v
            JOIN pluto p ON v.bbl = p.bbl
            WHERE {where}
            UNION ALL
            SELECT
                'DOB' AS source,
                CAST(v.violationid AS VARCHAR) AS violationid,
                v.bbl,
                p.address,
                p.borough,
                v.issueddate,
                v.violationstatus,
                v.violationtype,
                v.description
            FROM dob_violations v
            JOIN pluto p ON v.bbl = p.bbl
            WHERE {where}
            ORDER BY {order_by}
            LIMIT {limit_placeholder}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=["hpd_violations", "dob_violations", "pluto"],
            joins=[Join(table="pluto", alias="p", on="v.bbl = p.bbl")],
            predicates=predicates,
            group_by=[],
            order_by=order_by,
            limit=query.limit,
            skipped_filters=skipped,
        )

    def _compile_building_lookup(self, query: StructuredQuery) -> CompiledQuery:
        predicates, params, skipped = self._build_predicates(
            query, {"pluto": "p"}, event_table=None
        )
        where = self._where(predicates)
        order_by = self._order_by(query.sort_order)
        params.append(query.limit)
        limit_placeholder = f"${len(params)}"

        sql = f"""
            SELECT
                p.bbl,
                p.address,
                p.borough,
                p.block,
                p.lot,
                p.bldgclass,
                p.landuse,
                p.yearbuilt,
                p.numfloors,
                p.unitsres,
                p.unitstotal,
                p.assesstot,
                p.exemptland,
                p.exempttot
            FROM pluto p
            WHERE {where}
            ORDER BY {order_by}
            LIMIT {limit_placeholder}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=["pluto"],
            joins=[],
            predicates=predicates,
            group_by=[],
            order_by=order_by,
            limit=query.limit,
            skipped_filters=skipped,
        )

    def _compile_comparison(self, query: StructuredQuery) -> CompiledQuery:
        predicates, params, skipped = self._build_predicates(
            query, BUILDING_VIOLATION_ALIASES, event_table="hpd_violations"
        )
        where = self._where(predicates)
        group_by = self._group_by(query) or ["p.borough"]
        order_by = "building_count DESC"

        sql = f"""
            SELECT
                {', '.join(group_by)},
                COUNT(DISTINCT p.bbl) AS building_count,
                AVG(p.yearbuilt) AS avg_year_built,
                AVG(p.numfloors) AS avg_floors,
                AVG(p.unitsres) AS avg_residential_units,
                COUNT(DISTINCT hv.id) AS hpd_violation_count,
                COUNT(DISTINCT dv.id) AS dob_violation_count
            FROM pluto p
            LEFT JOIN hpd_violations hv ON p.bbl = hv.bbl
            LEFT JOIN dob_violations dv ON p.bbl = dv.bbl
            WHERE {where}
            GROUP BY {', '.join(group_by)}
            ORDER BY {order_by}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=["pluto", "hpd_violations", "dob_violations"],
            joins=list(BUILDING_VIOLATION_JOINS),
            predicates=predicates,
            group_by=group_by,
            order_by=order_by,
            limit=None,
            skipped_filters=skipped,
        )

    def _compile_general_stats(self, query: StructuredQuery) -> CompiledQuery:
        predicates, params, skipped = self._build_predicates(
            query, BUILDING_VIOLATION_ALIASES, event_table="hpd_violations"
        )
        where = self._where(predicates)

        sql = f"""
            SELECT
                COUNT(DISTINCT p.bbl) AS total_buildings,
                AVG(p.yearbuilt) AS avg_year_built,
                MIN(p.yearbuilt) AS oldest_building,
                MAX(p.yearbuilt) AS newest_building,
                AVG(p.numfloors) AS avg_floors,
                MAX(p.numfloors) AS max_floors,
                SUM(p.unitsres) AS total_residential_units,
                COUNT(DISTINCT hv.id) AS total_hpd_violations,
                COUNT(DISTINCT dv.id) AS total_dob_violations
            FROM pluto p
            LEFT JOIN hpd_violations hv ON p.bbl = hv.bbl
            LEFT JOIN dob_violations dv ON p.bbl = dv.bbl
            WHERE {where}
        """

        return CompiledQuery(
            intent=query.intent,
            sql=self._clean(sql),
            params=params,
            tables=["pluto", "hpd_violations", "dob_violations"],
            joins=list(BUILDING_VIOLATION_JOINS),
            predicates=predicates,
            group_by=[],
            order_by=None,
            limit=None,
            skipped_filters=skipped,
        )

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _build_predicates(
        self,
        query: StructuredQuery,
        aliases: Dict[str, str],
        event_table: Optional[str],
        include_violation_type: bool = False,
        excluded_columns: Set[str] = frozenset(),
    ) -> Tuple[List[Predicate], List[Any], List[Filter]]:
        """
        Turn entity values and explicit filters into rendered predicates.

        Values of one entity kind form a single OR group; every explicit
        filter becomes its own predicate.

        Returns:
            (predicates, params, skipped filters)
        """
        groups: List[List[Filter]] = []

        locations = [
            Filter(table="pluto", column="borough", operator="=", value=str(ev.value))
            for ev in query.entity_values("location")
        ]
        if locations:
            groups.append(locations)

        building_types = [
            Filter(table="pluto", column="bldgclass", operator="LIKE",
                   value=f"{self._building_class_code(str(ev.value))}%")
            for ev in query.entity_values("building_type")
        ]
        if building_types:
            groups.append(building_types)

        time_ranges = [
            Filter(table=event_table or "hpd_violations", column="issueddate", operator="BETWEEN",
                   value=[ev.value.start, ev.value.end])
            for ev in query.entity_values("time_period")
            if ev.is_time_range
        ]
        if time_ranges:
            groups.append(time_ranges)

        if include_violation_type:
            violation_types = [
                Filter(table=event_table, column="violationtype", operator="LIKE",
                       value=f"%{ev.value}%")
                for ev in query.entity_values("violation_type")
            ]
            if violation_types:
                groups.append(violation_types)

        for explicit in query.filters:
            groups.append([explicit])

        predicates: List[Predicate] = []
        params: List[Any] = []
        skipped: List[Filter] = []

        for group in groups:
            applicable = []
            for f in group:
                if self._is_applicable(f, aliases, excluded_columns):
                    applicable.append(f)
                else:
                    logger.warning(f"Skipping filter on {f.table}.{f.column}: not available for this query")
                    skipped.append(f)
            if not applicable:
                continue

            fragments = [self._render(f, aliases[f.table], params) for f in applicable]
            sql = fragments[0] if len(fragments) == 1 else "(" + " OR ".join(fragments) + ")"
            predicates.append(Predicate(filters=applicable, sql=sql))

        return predicates, params, skipped

    @staticmethod
    def _is_applicable(f: Filter, aliases: Dict[str, str], excluded_columns: Set[str]) -> bool:
        if f.table not in aliases:
            return False
        if f.column not in ALLOWED_COLUMNS.get(f.table, set()):
            return False
        return f.column not in excluded_columns

    def _render(self, f: Filter, alias: str, params: List[Any]) -> str:
        """Render one filter, appending its bound values to params."""
        if f.operator == "BETWEEN":
            start, end = (self._coerce_value(f.column, v) for v in f.value)
            if self._is_calendar_date(start) and self._is_calendar_date(end):
                # Date columns hold timestamps, so the whole end day must be included
                params.extend([start, end + timedelta(days=1)])
                column = f"{alias}.{f.column}"
                return f"({column} >= ${len(params) - 1} AND {column} < ${len(params)})"
            params.extend([start, end])
            return f"{alias}.{f.column} BETWEEN ${len(params) - 1} AND ${len(params)}"

        params.append(self._coerce_value(f.column, f.value))
        return f"{alias}.{f.column} {f.operator} ${len(params)}"

    @staticmethod
    def _is_calendar_date(value: Any) -> bool:
        return isinstance(value, date) and not isinstance(value, datetime)

    @staticmethod
    def _coerce_value(column: str, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if ISO_DATE_PATTERN.match(text):
                try:
                    return date.fromisoformat(text)
                except ValueError:
                    return value
            if column in NUMERIC_COLUMNS:
                try:
                    number = float(text)
                except ValueError:
                    return value
                return int(number) if number.is_integer() else number
        return value

    @staticmethod
    def _where(predicates: List[Predicate]) -> str:
        if not predicates:
            return "1=1"
        return " AND ".join(p.sql for p in predicates)

    @staticmethod
    def _building_class_code(building_type: str) -> str:
        return BUILDING_CLASS_CODES.get(building_type.lower(), building_type)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_qualifier(identifier: str) -> str:
        """Turn "p.borough" or "pluto.borough" into "borough"."""
        return identifier.strip().split(".")[-1].lower()

    def _group_by(self, query: StructuredQuery) -> List[str]:
        columns = []
        for aggregation in query.aggregations:
            column = self._strip_qualifier(aggregation.group_by)
            if column in ALLOWED_COLUMNS["pluto"]:
                qualified = f"p.{column}"
                if qualified not in columns:
                    columns.append(qualified)
            else:
                logger.warning(f"Ignoring unsupported group-by column: {aggregation.group_by}")
        return columns

    def _order_by(self, sort_order: Optional[str]) -> str:
        default = "p.address ASC"
        if not sort_order:
            return default

        parts = sort_order.split()
        column = self._strip_qualifier(parts[0])
        direction = parts[1].upper() if len(parts) > 1 else "ASC"

        if column not in ALLOWED_COLUMNS["pluto"] or direction not in ("ASC", "DESC"):
            logger.warning(f"Ignoring unsupported sort order: {sort_order}")
            return default
        return f"p.{column} {direction}"

    @staticmethod
    def _trend_table(query: StructuredQuery) -> str:
        violation_types = [str(ev.value).lower() for ev in query.entity_values("violation_type")]
        if any("hpd" in v or "housing" in v for v in violation_types):
            return "hpd_violations"
        if violation_types:
            return "dob_violations"
        return "dob_permits"

    @staticmethod
    def _clean(sql: str) -> str:
        lines = [line.strip() for line in sql.strip().splitlines()]
        return "\n".join(line for line in lines if line)
