"""Data Store module for loading NYC building tables and executing compiled queries."""

import asyncio
import json
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional

import duckdb
import pandas as pd

from nycdb_insights.core.models import CompiledQuery, QueryResult
from nycdb_insights.data.result_cache import ResultCache
from nycdb_insights.error_handler import DataAccessError, QueryTimeoutError

logger = logging.getLogger(__name__)


DATE_COLUMNS = ("issueddate",)

# Column types used when a known table has no source file
KNOWN_TABLE_SCHEMAS: Dict[str, Dict[str, str]] = {
    "pluto": {
        "bbl": "int64", "address": "object", "borough": "object", "block": "int64",
        "lot": "int64", "bldgclass": "object", "landuse": "object", "yearbuilt": "int64",
        "numfloors": "float64", "unitsres": "int64", "unitstotal": "int64",
        "assesstot": "float64", "exemptland": "float64", "exempttot": "float64",
        "zipcode": "object",
    },
    "hpd_violations": {
        "id": "int64", "violationid": "int64", "bbl": "int64", "issueddate": "datetime64[ns]",
        "violationstatus": "object", "violationtype": "object", "novdescription": "object",
    },
    "dob_violations": {
        "id": "int64", "violationid": "object", "bbl": "int64", "issueddate": "datetime64[ns]",
        "violationstatus": "object", "violationtype": "object", "description": "object",
    },
    "dob_permits": {
        "id": "int64", "bbl": "int64", "issueddate": "datetime64[ns]", "jobtype": "object",
        "permittype": "object", "permitstatus": "object", "worktype": "object",
    },
}


class DataStore:
    """
    Data Store class that manages data loading and query execution using DuckDB.

    This class provides an interface for:
    - Loading the NYC building tables from DataFrames or CSV files
    - Executing compiled, parameter-bound queries off the event loop
    - Retrieving schema information and table listings
    """

    def __init__(self, database_path: str = ":memory:",
                 result_cache: Optional[ResultCache] = None,
                 query_timeout: float = 30):
        """
        Initialize the DuckDB connection.

        Args:
            database_path: DuckDB database file, or ":memory:"
            result_cache: Optional cache for query results
            query_timeout: Seconds a query may run before it is abandoned
        """
        self.connection = duckdb.connect(database=database_path)
        self.tables: Dict[str, pd.DataFrame] = {}
        self.result_cache = result_cache
        self.query_timeout = query_timeout
        self._lock = threading.Lock()
        logger.info(f"DataStore initialized with DuckDB connection ({database_path})")

    def register_dataframe(self, table_name: str, df: pd.DataFrame) -> None:
        """
        Register a Pandas DataFrame as a DuckDB table.

        Args:
            table_name: Name for the table in DuckDB
            df: Pandas DataFrame to register

        Raises:
            ValueError: If table_name is empty or df is not a DataFrame
        """
        if not table_name or not isinstance(table_name, str):
            raise ValueError("table_name must be a non-empty string")

        if not isinstance(df, pd.DataFrame):
            raise ValueError("df must be a pandas DataFrame")

        df = self._parse_date_columns(df)

        with self._lock:
            self.tables[table_name] = df
            self.connection.register(table_name, df)

        logger.info(f"Registered table '{table_name}' with {len(df)} rows and {len(df.columns)} columns")

    @staticmethod
    def _parse_date_columns(df: pd.DataFrame) -> pd.DataFrame:
        """Convert known date columns to datetimes so date range filters compare correctly."""
        columns = [c for c in DATE_COLUMNS if c in df.columns and not pd.api.types.is_datetime64_any_dtype(df[c])]
        if not columns:
            return df
        df = df.copy()
        for column in columns:
            df[column] = pd.to_datetime(df[column], errors="coerce")
        return df

    def load_csv(self, file_path: str, table_name: Optional[str] = None) -> str:
        """
        Load CSV file into the data store.

        Args:
            file_path: Path to the CSV file
            table_name: Optional name for the table. If not provided, uses filename without extension

        Returns:
            Name of the created table

        Raises:
            ValueError: If file_path is invalid or the file cannot be parsed
            FileNotFoundError: If file doesn't exist
        """
        if not file_path or not isinstance(file_path, str):
            raise ValueError("file_path must be a non-empty string")

        if not os.path.exists(file_path):
            raise FileNotFoundError(f"File not found: {file_path}")

        if not file_path.lower().endswith('.csv'):
            raise ValueError(
                f"Unsupported file format. Expected CSV file but got: {file_path}. "
                f"Please provide a file with .csv extension."
            )

        if table_name is None:
            table_name = os.path.splitext(os.path.basename(file_path))[0]
            # Sanitize table name (replace spaces and special chars with underscores)
            table_name = "".join(c if c.isalnum() else "_" for c in table_name)

        try:
            logger.info(f"Loading CSV file: {file_path}")
            df = pd.read_csv(file_path, keep_default_na=True)
        except pd.errors.EmptyDataError:
            raise ValueError(f"CSV file is empty: {file_path}")
        except pd.errors.ParserError as e:
            raise ValueError(
                f"Failed to parse CSV file '{file_path}'. "
                f"The file may be corrupted or not in valid CSV format. Error: {str(e)}"
            )

        df.columns = [str(c).strip().lower() for c in df.columns]
        self.register_dataframe(table_name, df)

        logger.info(
            f"Successfully loaded CSV '{file_path}' as table '{table_name}' "
            f"with {len(df)} rows and {len(df.columns)} columns"
        )
        return table_name

    def load_directory(self, data_dir: str) -> List[str]:
        """
        Load every known table that has a ``<table>.csv`` file in data_dir.

        Args:
            data_dir: Directory holding the CSV exports

        Returns:
            Names of the tables loaded
        """
        if not os.path.isdir(data_dir):
            logger.warning(f"Data directory not found: {data_dir}")
            return []

        loaded = []
        for table_name in KNOWN_TABLE_SCHEMAS:
            path = os.path.join(data_dir, f"{table_name}.csv")
            if os.path.exists(path):
                loaded.append(self.load_csv(path, table_name))
        logger.info(f"Loaded {len(loaded)} table(s) from {data_dir}")
        return loaded

    def ensure_known_tables(self) -> List[str]:
        """
        Register an empty, typed table for every known table that is missing.

        Returns:
            Names of the tables created
        """
        created = []
        for table_name, schema in KNOWN_TABLE_SCHEMAS.items():
            if table_name in self.tables:
                continue
            df = pd.DataFrame({column: pd.Series(dtype=dtype) for column, dtype in schema.items()})
            self.register_dataframe(table_name, df)
            created.append(table_name)
        if created:
            logger.warning(f"No data for table(s) {created}; registered empty tables")
        return created

    async def execute(self, compiled: CompiledQuery) -> QueryResult:
        """
        Execute a compiled query.

        The query runs in a worker thread under the connection lock and is
        bounded by the query timeout.

        Args:
            compiled: Compiled query with SQL text and bound parameters

        Returns:
            QueryResult with JSON-safe rows

        Raises:
            DataAccessError: If the query fails, times out, or the connection is closed
        """
        intent = compiled.intent.value
        cache_key = compiled.fingerprint()

        if self.result_cache is not None:
            cached_rows = self.result_cache.get(cache_key)
            if cached_rows is not None:
                logger.info(f"Result cache hit for {intent} query")
                return QueryResult(rows=cached_rows, row_count=len(cached_rows), cached=True)

        start_time = time.time()
        try:
            rows = await asyncio.wait_for(
                asyncio.to_thread(self._run, compiled.sql, compiled.params),
                timeout=self.query_timeout
            )
        except asyncio.TimeoutError as e:
            self.connection.interrupt()
            logger.error(f"Data access timed out for {intent} query")
            raise QueryTimeoutError(compiled.intent) from e
        except Exception as e:
            # SQL text and parameters stay out of the log
            logger.error(f"Data access failed for {intent} query ({e.__class__.__name__})")
            raise DataAccessError(compiled.intent) from e

        execution_time = time.time() - start_time
        logger.info(f"{intent} query returned {len(rows)} rows in {execution_time:.3f}s")

        if self.result_cache is not None:
            self.result_cache.set(cache_key, rows)

        return QueryResult(rows=rows, row_count=len(rows), execution_time=execution_time)

    def _run(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        with self._lock:
            df = self.connection.execute(sql, params).fetchdf()
        return self._to_records(df)

    @staticmethod
    def _to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
        """Convert a result frame to JSON-safe dicts (ISO dates, NaN as None)."""
        if df.empty:
            return []
        return json.loads(df.to_json(orient="records", date_format="iso"))

    def get_table_schema(self, table_name: str) -> Dict:
        """
        Get schema information for a specific table.

        Args:
            table_name: Name of the table

        Returns:
            Dictionary with 'name', 'columns' (name, type, nullable) and 'row_count'

        Raises:
            ValueError: If table_name doesn't exist
        """
        if table_name not in self.tables:
            raise ValueError(f"Table '{table_name}' not found. Available tables: {list(self.tables.keys())}")

        df = self.tables[table_name]

        columns = []
        for col_name in df.columns:
            columns.append({
                "name": col_name,
                "type": str(df[col_name].dtype),
                "nullable": bool(df[col_name].isna().any())
            })

        logger.debug(f"Retrieved schema for table '{table_name}'")
        return {
            "name": table_name,
            "columns": columns,
            "row_count": len(df)
        }

    def list_tables(self) -> List[str]:
        """
        List all registered tables.

        Returns:
            List of table names
        """
        table_list = list(self.tables.keys())
        logger.debug(f"Listed {len(table_list)} tables")
        return table_list

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self.connection:
            self.connection.close()
            logger.info("DuckDB connection closed")
