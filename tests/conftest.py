import uuid
from typing import Any, Callable, Dict, Generator, Tuple

import pytest

from py_load_census.adapters.postgres import PostgreSQLAdapter
from py_load_census.schemas import INGESTION_STATE_SCHEMA, METADATA_SCHEMA


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Starts a PostgreSQL container for the test session, or skips the
    integration tests when Docker is not available.
    NULLS NOT DISTINCT needs PostgreSQL 15 or newer.
    """
    try:
        from testcontainers.postgres import PostgresContainer

        container = PostgresContainer("postgres:15-alpine")
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def connection_details(postgres_container: Any) -> Dict[str, Any]:
    return {
        "type": "postgres",
        "host": postgres_container.get_container_host_ip(),
        "port": postgres_container.get_exposed_port(5432),
        "user": postgres_container.username,
        "password": postgres_container.password,
        "dbname": postgres_container.dbname,
    }


@pytest.fixture(scope="function")
def adapter_factory(
    connection_details: Dict[str, Any],
) -> Generator[Callable[[], PostgreSQLAdapter], None, None]:
    """
    Yields a factory of connected adapters that all share one freshly
    provisioned schema, unique to the test. The schema is dropped on teardown.
    """
    schema_name = f"test_schema_{uuid.uuid4().hex}"
    adapters = []

    def make_adapter() -> PostgreSQLAdapter:
        adapter = PostgreSQLAdapter(schema=schema_name)
        adapter.connect(connection_details)
        adapters.append(adapter)
        return adapter

    owner = make_adapter()
    owner.ensure_schema(METADATA_SCHEMA)
    owner.ensure_schema(INGESTION_STATE_SCHEMA)
    owner.commit()

    try:
        yield make_adapter
    finally:
        for adapter in adapters[1:]:
            adapter.disconnect()
        assert owner.conn is not None
        owner.rollback()
        with owner.conn.cursor() as cursor:
            cursor.execute(f"DROP SCHEMA IF EXISTS {schema_name} CASCADE;")
        owner.commit()
        owner.disconnect()


@pytest.fixture(scope="function")
def postgres_adapter(
    adapter_factory: Callable[[], PostgreSQLAdapter],
) -> Tuple[PostgreSQLAdapter, str]:
    """A connected adapter on a provisioned schema, and that schema's name."""
    adapter = adapter_factory()
    return adapter, adapter.schema


@pytest.fixture
def variables_payload() -> Dict[str, Any]:
    """A trimmed variables.json as served for an ACS endpoint."""
    return {
        "variables": {
            "for": {
                "label": "Census API FIPS 'for' clause",
                "concept": "Census API Geography Specification",
                "predicateType": "fips-for",
                "group": "N/A",
                "limit": 0,
                "predicateOnly": True,
            },
            "B01001_002E": {
                "label": "Estimate!!Total:!!Male:",
                "concept": "SEX BY AGE",
                "predicateType": "int",
                "group": "B01001",
                "limit": 0,
                "attributes": "B01001_002EA,B01001_002M,B01001_002MA",
            },
        }
    }


@pytest.fixture
def geography_payload() -> Dict[str, Any]:
    return {
        "fips": [
            {"name": "us", "geoLevelDisplay": "010", "referenceDate": "2020-01-01"},
            {
                "name": "county",
                "geoLevelDisplay": "050",
                "referenceDate": "2020-01-01",
                "requires": ["state"],
                "wildcard": ["state"],
                "optionalWithWCFor": "state",
            },
        ]
    }


@pytest.fixture
def index_payload() -> Dict[str, Any]:
    return {
        "dataset": [
            {
                "c_vintage": 2020,
                "c_dataset": ["acs", "acs5"],
                "c_geographyLink": "http://api.census.gov/data/2020/acs/acs5/geography.json",
                "c_variablesLink": "http://api.census.gov/data/2020/acs/acs5/variables.json",
                "title": "ACS 5-Year Detailed Tables",
                "description": "The American Community Survey 5-year estimates.",
            },
            {
                "c_vintage": 2021,
                "c_dataset": ["acs", "acs1"],
                "c_geographyLink": "http://api.census.gov/data/2021/acs/acs1/geography.json",
                "c_variablesLink": "http://api.census.gov/data/2021/acs/acs1/variables.json",
                "title": "ACS 1-Year Detailed Tables",
                "description": "The American Community Survey 1-year estimates.",
            },
        ]
    }
