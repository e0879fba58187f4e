import logging
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection

from py_load_census.hashing import variable_dedup_key
from py_load_census.interfaces import MetadataStoreInterface
from py_load_census.models import ApiPath, Geography, Variable
from py_load_census.schemas import API_PATHS_DEDUP_CONSTRAINT, VARIABLES_DEDUP_CONSTRAINT

API_PATH_COLUMNS = (
    "c_vintage",
    "c_dataset",
    "c_geography_link",
    "c_variables_link",
    "title",
    "description",
)
VARIABLE_COLUMNS = (
    "name",
    "label",
    "concept",
    "required",
    "predicate_type",
    "group",
    "limit",
    "predicate_only",
    "attributes",
)
GEOGRAPHY_COLUMNS = (
    "name",
    "geo_level_display",
    "reference_date",
    "requires",
    "wildcard",
    "limit",
    "geo_level_id",
    "optional_with_wildcard_for",
)


def _pipeline_version() -> str:
    try:
        return version("py_load_census")
    except PackageNotFoundError:
        return "unknown"


class PostgreSQLAdapter(MetadataStoreInterface):
    """
    Metadata store backed by PostgreSQL (15 or newer).

    All tables and functions live in `schema`. Batched statements are paged
    by `batch_size` rows.
    """

    def __init__(self, schema: str = "public", batch_size: int = 5000) -> None:
        self.conn: Optional[connection] = None
        self.schema = schema
        self.batch_size = batch_size

    def connect(self, connection_details: Dict[str, Any]) -> None:
        """
        Establish connection to the target PostgreSQL database.
        A `dsn` replaces every other libpq setting; libpq would otherwise let
        the keyword arguments override the host and database named in it.
        """
        if self.conn:
            return

        try:
            connect_params = {k: v for k, v in connection_details.items() if v is not None}
            connect_params.pop("type", None)
            schema = connect_params.pop("schema", None)
            if schema:
                self.schema = schema
            dsn = connect_params.pop("dsn", None)
            if dsn:
                logging.info(f"Connecting with a DSN; ignoring {sorted(connect_params)}.")
                connect_params = {"dsn": dsn}
            self.conn = psycopg2.connect(**connect_params)
            logging.info("Successfully connected to PostgreSQL.")
        except psycopg2.Error as e:
            logging.error(f"Error: Unable to connect to PostgreSQL database: {e}")
            raise ConnectionError("Failed to connect to PostgreSQL.") from e

    def disconnect(self) -> None:
        """Disconnect from the target PostgreSQL database."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logging.info("PostgreSQL connection closed.")

    def _connection(self) -> connection:
        if not self.conn:
            raise ConnectionError("Not connected to the database. Call connect() first.")
        return self.conn

    def commit(self) -> None:
        """Commit the current database transaction."""
        self._connection().commit()

    def rollback(self) -> None:
        """Roll back the current database transaction."""
        self._connection().rollback()

    def _table(self, table_name: str) -> sql.Identifier:
        return sql.Identifier(self.schema, table_name)

    def ensure_schema(self, schema_definition: Dict[str, Any]) -> None:
        """
        Ensure the schema, its immutable functions and its tables exist.
        Every statement is idempotent. This method should be executed within a transaction.
        """
        conn = self._connection()
        schema = sql.Identifier(self.schema)

        with conn.cursor() as cursor:
            logging.info(f"Ensuring schema '{self.schema}' exists...")
            cursor.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(schema))

            for function_name, function_def in schema_definition.get("functions", {}).items():
                logging.info(f"Ensuring function '{self.schema}.{function_name}' exists...")
                cursor.execute(
                    sql.SQL(
                        "CREATE OR REPLACE FUNCTION {}({}) RETURNS {} AS {} LANGUAGE plpgsql IMMUTABLE"
                    ).format(
                        sql.Identifier(self.schema, function_name),
                        sql.SQL(function_def["arguments"]),
                        sql.SQL(function_def["returns"]),
                        sql.Literal(function_def["body"]),
                    )
                )

            for table_name, table_def in schema_definition.get("tables", {}).items():
                logging.info(f"Ensuring table '{self.schema}.{table_name}' exists...")
                columns = table_def.get("columns", {})
                if not columns:
                    continue

                col_defs = [
                    sql.SQL("{} {}").format(sql.Identifier(col_name), sql.SQL(col_type).format(schema=schema))
                    for col_name, col_type in columns.items()
                ]
                pk = table_def.get("primary_key")
                if pk:
                    col_defs.append(sql.SQL("PRIMARY KEY ({})").format(sql.Identifier(pk)))

                unique_kind = (
                    sql.SQL("UNIQUE NULLS NOT DISTINCT")
                    if table_def.get("nulls_not_distinct")
                    else sql.SQL("UNIQUE")
                )
                for constraint_name, unique_cols in table_def.get("unique", {}).items():
                    col_defs.append(
                        sql.SQL("CONSTRAINT {} {} ({})").format(
                            sql.Identifier(constraint_name),
                            unique_kind,
                            sql.SQL(", ").join(map(sql.Identifier, unique_cols)),
                        )
                    )

                cursor.execute(
                    sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
                        self._table(table_name), sql.SQL(", ").join(col_defs)
                    )
                )
            logging.info("Schema and tables verified successfully.")

    def get_unique_constraints(self, table_name: str) -> List[str]:
        """Return the unique constraints of a table, read from pg_constraint."""
        conn = self._connection()
        with conn.cursor() as cursor:
            qualified_name = self._table(table_name).as_string(cursor)
            # contype 'u' = unique constraint
            cursor.execute(
                "SELECT conname FROM pg_constraint WHERE conrelid = %s::regclass AND contype = 'u' ORDER BY conname",
                (qualified_name,),
            )
            return [row[0] for row in cursor.fetchall()]

    def _insert_returning_ids(
        self, query: sql.Composable, rows: Sequence[Tuple[Any, ...]]
    ) -> List[int]:
        if not rows:
            return []
        conn = self._connection()
        with conn.cursor() as cursor:
            result = psycopg2.extras.execute_values(
                cursor, query, rows, page_size=self.batch_size, fetch=True
            )
        return [row[0] for row in result]

    def _upsert_query(self, table_name: str, columns: Sequence[str], constraint: str, keep_column: str) -> sql.Composed:
        # The DO UPDATE writes a column back to its stored value so RETURNING also
        # yields the id of an existing row; DO NOTHING would return nothing.
        return sql.SQL(
            "INSERT INTO {table} AS existing ({cols}) VALUES %s "
            "ON CONFLICT ON CONSTRAINT {constraint} DO UPDATE SET {keep} = existing.{keep} "
            "RETURNING id"
        ).format(
            table=self._table(table_name),
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            constraint=sql.Identifier(constraint),
            keep=sql.Identifier(keep_column),
        )

    def upsert_api_path(self, api_path: ApiPath) -> int:
        return self.upsert_api_paths([api_path])[0]

    def upsert_api_paths(self, api_paths: List[ApiPath]) -> List[int]:
        """
        Insert API paths; a path whose (vintage, dataset) already exists keeps
        its stored title, description and links.
        """
        unique: Dict[Any, ApiPath] = {}
        for api_path in api_paths:
            unique.setdefault(api_path.key, api_path)
        rows = [
            (p.c_vintage, p.c_dataset, p.c_geography_link, p.c_variables_link, p.title, p.description)
            for p in unique.values()
        ]
        query = self._upsert_query("api_paths", API_PATH_COLUMNS, API_PATHS_DEDUP_CONSTRAINT, "title")
        ids = self._insert_returning_ids(query, rows)
        logging.debug(f"Upserted {len(ids)} API paths.")
        return ids

    def get_api_paths(self, variables_link_pattern: Optional[str] = None) -> List[ApiPath]:
        conn = self._connection()
        query = sql.SQL("SELECT id, {cols} FROM {table}").format(
            cols=sql.SQL(", ").join(map(sql.Identifier, API_PATH_COLUMNS)),
            table=self._table("api_paths"),
        )
        params: Tuple[Any, ...] = ()
        if variables_link_pattern:
            query = query + sql.SQL(" WHERE c_variables_link ~ %s")
            params = (variables_link_pattern,)
        query = query + sql.SQL(" ORDER BY id")

        with conn.cursor() as cursor:
            cursor.execute(query, params)
            return [
                ApiPath(
                    id=row[0],
                    c_vintage=row[1],
                    c_dataset=list(row[2] or []),
                    c_geography_link=row[3],
                    c_variables_link=row[4],
                    title=row[5],
                    description=row[6],
                )
                for row in cursor.fetchall()
            ]

    def upsert_variable(self, variable: Variable) -> int:
        return self.upsert_variables([variable])[0]

    def upsert_variables(self, variables: List[Variable]) -> List[int]:
        """
        Insert variables, returning the id of the existing row for any variable
        that duplicates one already stored (see hashing.variable_dedup_key).
        """
        # A single INSERT ... ON CONFLICT cannot touch the same row twice, and a
        # stable row order keeps concurrent writers from locking rows in
        # opposite orders.
        unique: Dict[Any, Variable] = {}
        for variable in variables:
            unique.setdefault(variable_dedup_key(variable), variable)
        ordered = [unique[key] for key in sorted(unique)]
        rows = [
            (
                v.name,
                v.label,
                v.concept,
                v.required,
                v.predicate_type,
                v.group,
                v.limit,
                v.predicate_only,
                v.attributes,
            )
            for v in ordered
        ]
        query = self._upsert_query("variables", VARIABLE_COLUMNS, VARIABLES_DEDUP_CONSTRAINT, "name")
        return self._insert_returning_ids(query, rows)

    def insert_geography(self, geography: Geography) -> int:
        return self.insert_geographies([geography])[0]

    def insert_geographies(self, geographies: List[Geography]) -> List[int]:
        rows = [
            (
                g.name,
                g.geo_level_display,
                g.reference_date,
                g.requires,
                g.wildcard,
                g.limit,
                g.geo_level_id,
                g.optional_with_wildcard_for,
            )
            for g in geographies
        ]
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES %s RETURNING id").format(
            table=self._table("geography"),
            cols=sql.SQL(", ").join(map(sql.Identifier, GEOGRAPHY_COLUMNS)),
        )
        return self._insert_returning_ids(query, rows)

    def delete_geographies(self, api_path_id: int) -> int:
        """
        Delete an API path's geography associations and the geography rows
        they point to. This method should be executed within a transaction.
        """
        conn = self._connection()
        with conn.cursor() as cursor:
            cursor.execute(
                sql.SQL("DELETE FROM {} WHERE api_paths_id = %s RETURNING geography_id").format(
                    self._table("api_paths_geography_association")
                ),
                (api_path_id,),
            )
            geography_ids = [row[0] for row in cursor.fetchall()]
            if not geography_ids:
                return 0
            cursor.execute(
                sql.SQL("DELETE FROM {} WHERE id = ANY(%s)").format(self._table("geography")),
                (geography_ids,),
            )
            logging.debug(f"Deleted {cursor.rowcount} geography rows of API path {api_path_id}.")
            return cursor.rowcount

    def _associate(self, table_name: str, entity_column: str, api_path_id: int, entity_ids: List[int]) -> None:
        rows = [(api_path_id, entity_id) for entity_id in dict.fromkeys(entity_ids)]
        if not rows:
            return
        query = sql.SQL("INSERT INTO {table} (api_paths_id, {col}) VALUES %s ON CONFLICT DO NOTHING").format(
            table=self._table(table_name),
            col=sql.Identifier(entity_column),
        )
        conn = self._connection()
        with conn.cursor() as cursor:
            psycopg2.extras.execute_values(cursor, query, rows, page_size=self.batch_size)

    def associate_variables(self, api_path_id: int, variable_ids: List[int]) -> None:
        self._associate("api_paths_variables_association", "variables_id", api_path_id, variable_ids)

    def associate_geographies(self, api_path_id: int, geography_ids: List[int]) -> None:
        self._associate("api_paths_geography_association", "geography_id", api_path_id, geography_ids)

    def get_latest_state(self, endpoint: str) -> Dict[str, Any]:
        """Retrieve the latest ingestion state for an endpoint from PostgreSQL."""
        conn = self._connection()
        query = sql.SQL("SELECT * FROM {} WHERE endpoint = %s").format(self._table("ingestion_state"))
        with conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cursor:
            cursor.execute(query, (endpoint,))
            result = cursor.fetchone()
            return dict(result) if result else {}

    def update_state(self, endpoint: str, state: Dict[str, Any], status: str) -> None:
        """
        Update the ingestion state for an endpoint.
        This method should be executed within a transaction.
        """
        conn = self._connection()
        now = datetime.now(timezone.utc)

        update_sql = sql.SQL("""
        INSERT INTO {table} AS previous (
            endpoint, api_paths_id, last_run_ts_utc, last_successful_run_ts_utc,
            status, variables_count, geography_count, last_error, pipeline_version
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (endpoint) DO UPDATE SET
            api_paths_id = EXCLUDED.api_paths_id,
            last_run_ts_utc = EXCLUDED.last_run_ts_utc,
            last_successful_run_ts_utc = CASE
                WHEN EXCLUDED.status = 'SUCCESS'
                THEN EXCLUDED.last_successful_run_ts_utc
                ELSE previous.last_successful_run_ts_utc
            END,
            status = EXCLUDED.status,
            variables_count = EXCLUDED.variables_count,
            geography_count = EXCLUDED.geography_count,
            last_error = EXCLUDED.last_error,
            pipeline_version = EXCLUDED.pipeline_version;
        """).format(table=self._table("ingestion_state"))

        with conn.cursor() as cursor:
            cursor.execute(update_sql, (
                endpoint,
                state.get("api_paths_id"),
                now,
                now if status == "SUCCESS" else None,
                status,
                state.get("variables_count"),
                state.get("geography_count"),
                state.get("last_error"),
                _pipeline_version(),
            ))
            logging.debug(f"State for endpoint '{endpoint}' updated with status '{status}'.")

    def get_all_states(self) -> List[Dict[str, Any]]:
        """Retrieve all ingestion states from the database."""
        conn = self._connection()
        query = sql.SQL("SELECT * FROM {} ORDER BY endpoint").format(self._table("ingestion_state"))
        with conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cursor:
            cursor.execute(query)
            return [dict(row) for row in cursor.fetchall()]
