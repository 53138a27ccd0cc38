"""Unit tests for DataStore class."""

import asyncio
import time
from datetime import date
from unittest.mock import patch

import duckdb
import pandas as pd
import pytest

from nycdb_insights.core.models import CompiledQuery, EntityValue, Intent, StructuredQuery, TimeRange
from nycdb_insights.data.data_store import DataStore, KNOWN_TABLE_SCHEMAS
from nycdb_insights.data.query_compiler import QueryCompiler
from nycdb_insights.data.result_cache import ResultCache
from nycdb_insights.error_handler import DataAccessError, QueryTimeoutError


@pytest.fixture
def pluto_df():
    return pd.DataFrame({
        "bbl": [3001, 3002, 1001],
        "address": ["1 MAIN ST", "2 MAIN ST", "5 BROADWAY"],
        "borough": ["Brooklyn", "Brooklyn", "Manhattan"],
        "block": [1, 1, 2],
        "lot": [1, 2, 1],
        "bldgclass": ["R4", "C1", "R2"],
        "landuse": ["01", "04", "01"],
        "yearbuilt": [1920, 2010, 1899],
        "numfloors": [5.0, 12.0, 3.0],
        "unitsres": [20, 0, 6],
        "unitstotal": [20, 4, 6],
        "assesstot": [1e6, 5e6, 8e5],
        "exemptland": [0.0, 0.0, 0.0],
        "exempttot": [0.0, 0.0, 0.0],
        "zipcode": ["11201", "11201", "10004"],
    })


@pytest.fixture
def hpd_df():
    return pd.DataFrame({
        "id": [1, 2, 3],
        "violationid": [101, 102, 103],
        "bbl": [3001, 3001, 1001],
        "issueddate": ["2023-01-15", "2023-06-01", "2022-03-10"],
        "violationstatus": ["Open", "Close", "Open"],
        "violationtype": ["HPD-A", "HPD-B", "HPD-A"],
        "novdescription": ["heat", "paint", "heat"],
    })


@pytest.fixture
def store(pluto_df, hpd_df):
    data_store = DataStore()
    data_store.register_dataframe("pluto", pluto_df)
    data_store.register_dataframe("hpd_violations", hpd_df)
    data_store.ensure_known_tables()
    yield data_store
    data_store.close()


class TestDataStoreInitialization:
    """Tests for DataStore initialization."""

    def test_initialization_creates_connection(self):
        """Test that DataStore initializes with a DuckDB connection."""
        store = DataStore()
        assert isinstance(store.connection, duckdb.DuckDBPyConnection)
        assert store.tables == {}
        assert store.result_cache is None
        store.close()


class TestRegisterDataFrame:
    """Tests for register_dataframe method."""

    def test_register_parses_dates(self, store):
        """Test that issueddate strings become datetimes."""
        assert pd.api.types.is_datetime64_any_dtype(store.tables["hpd_violations"]["issueddate"])

    def test_register_invalid_name(self):
        """Test that an empty table name is rejected."""
        store = DataStore()
        with pytest.raises(ValueError, match="non-empty string"):
            store.register_dataframe("", pd.DataFrame())
        store.close()

    def test_register_invalid_frame(self):
        """Test that a non-DataFrame is rejected."""
        store = DataStore()
        with pytest.raises(ValueError, match="pandas DataFrame"):
            store.register_dataframe("t", [1, 2, 3])
        store.close()


class TestLoading:
    """Tests for CSV and directory loading."""

    def test_load_csv_lowercases_columns(self, tmp_path):
        """Test CSV loading with a derived table name."""
        path = tmp_path / "my permits.csv"
        path.write_text("ID,BBL,IssuedDate\n1,3001,2023-01-01\n")

        store = DataStore()
        table = store.load_csv(str(path))

        assert table == "my_permits"
        assert list(store.tables[table].columns) == ["id", "bbl", "issueddate"]
        store.close()

    def test_load_csv_missing_file(self):
        """Test error for a missing file."""
        store = DataStore()
        with pytest.raises(FileNotFoundError):
            store.load_csv("/nonexistent/pluto.csv")
        store.close()

    def test_load_csv_wrong_extension(self, tmp_path):
        """Test error for a non-CSV file."""
        path = tmp_path / "pluto.txt"
        path.write_text("a,b\n1,2\n")

        store = DataStore()
        with pytest.raises(ValueError, match="Unsupported file format"):
            store.load_csv(str(path))
        store.close()

    def test_load_csv_empty_file(self, tmp_path):
        """Test error for an empty file."""
        path = tmp_path / "pluto.csv"
        path.write_text("")

        store = DataStore()
        with pytest.raises(ValueError, match="empty"):
            store.load_csv(str(path))
        store.close()

    def test_load_directory_only_known_tables(self, tmp_path):
        """Test that only files named after known tables are loaded."""
        (tmp_path / "pluto.csv").write_text("bbl,borough\n3001,Brooklyn\n")
        (tmp_path / "other.csv").write_text("a\n1\n")

        store = DataStore()
        loaded = store.load_directory(str(tmp_path))

        assert loaded == ["pluto"]
        assert store.list_tables() == ["pluto"]
        store.close()

    def test_load_directory_missing(self):
        """Test a missing directory loads nothing."""
        store = DataStore()
        assert store.load_directory("/nonexistent/dir") == []
        store.close()

    def test_ensure_known_tables(self):
        """Test that missing tables are registered empty with their columns."""
        store = DataStore()
        created = store.ensure_known_tables()

        assert created == list(KNOWN_TABLE_SCHEMAS)
        schema = store.get_table_schema("dob_permits")
        assert schema["row_count"] == 0
        assert [c["name"] for c in schema["columns"]] == list(KNOWN_TABLE_SCHEMAS["dob_permits"])
        assert store.ensure_known_tables() == []
        store.close()


class TestExecute:
    """Tests for executing compiled queries."""

    def test_execute_compiled_lookup(self, store):
        """Test a compiled building lookup returns the bound borough only."""
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.BUILDING_LOOKUP,
            original_query="buildings in brooklyn",
            entities={"location": [EntityValue(kind="location", raw="brooklyn", value="Brooklyn")]},
        ))

        result = asyncio.run(store.execute(compiled))

        assert result.row_count == 2
        assert {row["borough"] for row in result.rows} == {"Brooklyn"}
        assert [row["address"] for row in result.rows] == ["1 MAIN ST", "2 MAIN ST"]
        assert not result.cached

    def test_execute_risk_assessment_counts(self, store):
        """Test violation counts across the left joins."""
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.RISK_ASSESSMENT, original_query="risky buildings"
        ))

        result = asyncio.run(store.execute(compiled))

        top = result.rows[0]
        assert top["bbl"] == 3001
        assert top["hpd_violation_count"] == 2
        assert top["dob_violation_count"] == 0
        assert top["total_violations"] == 2

    def test_execute_violation_search_union(self, store):
        """Test the HPD and DOB union runs with an empty DOB table."""
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.VIOLATION_SEARCH, original_query="violations"
        ))

        result = asyncio.run(store.execute(compiled))

        assert result.row_count == 3
        assert {row["source"] for row in result.rows} == {"HPD"}
        assert result.rows[0]["issueddate"].startswith("2023-06-01")
        assert result.rows[0]["violationid"] == "102"

    def test_execute_time_range_includes_last_day(self, store):
        """Test a violation issued late on the last day of the range is returned."""
        store.register_dataframe("hpd_violations", pd.DataFrame({
            "id": [1, 2, 3],
            "violationid": [201, 202, 203],
            "bbl": [3001, 3001, 3002],
            "issueddate": ["2022-12-31 23:00:00", "2023-12-31 18:45:00", "2024-01-01 00:00:00"],
            "violationstatus": ["Open", "Open", "Open"],
            "violationtype": ["HPD-A", "HPD-A", "HPD-A"],
            "novdescription": ["heat", "heat", "heat"],
        }))
        last_year = EntityValue(
            kind="time_period", raw="last year", value=TimeRange(date(2023, 1, 1), date(2023, 12, 31))
        )
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.VIOLATION_SEARCH,
            original_query="violations last year",
            entities={"time_period": [last_year]},
        ))

        result = asyncio.run(store.execute(compiled))

        assert [row["violationid"] for row in result.rows] == ["202"]
        assert result.rows[0]["issueddate"].startswith("2023-12-31")

    def test_execute_rows_are_json_safe(self, store):
        """Test NaN becomes None in result rows."""
        store.register_dataframe("pluto", pd.DataFrame({
            "bbl": [1], "address": [None], "borough": ["Queens"], "block": [1], "lot": [1],
            "bldgclass": ["R1"], "landuse": ["01"], "yearbuilt": [1950], "numfloors": [float("nan")],
            "unitsres": [1], "unitstotal": [1], "assesstot": [1.0], "exemptland": [0.0],
            "exempttot": [0.0], "zipcode": ["11101"],
        }))
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.BUILDING_LOOKUP, original_query="buildings"
        ))

        row = asyncio.run(store.execute(compiled)).rows[0]

        assert row["numfloors"] is None
        assert row["address"] is None

    def test_execute_failure_raises_data_access_error(self, store):
        """Test that failures surface as DataAccessError without SQL text."""
        compiled = CompiledQuery(intent=Intent.GENERAL_STATS, sql="SELECT * FROM no_such_table")

        with pytest.raises(DataAccessError) as exc_info:
            asyncio.run(store.execute(compiled))

        assert str(exc_info.value) == "Data access failed for general_stats query"
        assert "no_such_table" not in str(exc_info.value)

    def test_execute_timeout(self, store):
        """Test that a timeout surfaces as a QueryTimeoutError, a kind of DataAccessError."""
        compiled = CompiledQuery(intent=Intent.TREND_ANALYSIS, sql="SELECT 1")
        store.query_timeout = 0.05

        with patch.object(store, "_run", side_effect=lambda sql, params: time.sleep(0.5)):
            with pytest.raises(QueryTimeoutError) as exc_info:
                asyncio.run(store.execute(compiled))

        assert isinstance(exc_info.value, DataAccessError)
        assert str(exc_info.value) == "Data access timed out for trend_analysis query"

    def test_execute_uses_result_cache(self, pluto_df):
        """Test that a repeated query is served from the cache."""
        store = DataStore(result_cache=ResultCache(ttl_seconds=60))
        store.register_dataframe("pluto", pluto_df)
        compiled = QueryCompiler().compile(StructuredQuery(
            intent=Intent.BUILDING_LOOKUP, original_query="buildings"
        ))

        first = asyncio.run(store.execute(compiled))
        second = asyncio.run(store.execute(compiled))

        assert not first.cached
        assert second.cached
        assert second.rows == first.rows
        store.close()


class TestSchema:
    """Tests for schema and table listing."""

    def test_get_table_schema(self, store):
        """Test schema retrieval."""
        schema = store.get_table_schema("pluto")

        assert schema["name"] == "pluto"
        assert schema["row_count"] == 3
        column_names = [c["name"] for c in schema["columns"]]
        assert "borough" in column_names

    def test_get_table_schema_missing(self, store):
        """Test error for a missing table."""
        with pytest.raises(ValueError, match="not found"):
            store.get_table_schema("missing")

    def test_list_tables(self, store):
        """Test listing includes the registered and the empty known tables."""
        assert set(store.list_tables()) == set(KNOWN_TABLE_SCHEMAS)
