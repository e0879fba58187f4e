from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from py_load_census.models import ApiPath, Geography, Variable


class MetadataStoreInterface(ABC):
    """
    Abstract Base Class for metadata store implementations.

    Every upsert is a single atomic statement that either inserts the record
    or returns the id of the row it duplicates, so concurrent ingests never
    create duplicates. Methods never commit; callers own the transaction.
    The store is a context manager that disconnects on exit.
    """

    @abstractmethod
    def connect(self, connection_details: Dict[str, Any]) -> None:
        """Establish connection to the target database."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the target database."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current database transaction."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the current database transaction."""
        pass

    @abstractmethod
    def ensure_schema(self, schema_definition: Dict[str, Any]) -> None:
        """Ensure the target schema, functions and tables exist."""
        pass

    @abstractmethod
    def get_unique_constraints(self, table_name: str) -> List[str]:
        """Return the names of the unique constraints on a table."""
        pass

    @abstractmethod
    def upsert_api_path(self, api_path: ApiPath) -> int:
        """Insert an API path unless one with the same (vintage, dataset) exists; return its id."""
        pass

    @abstractmethod
    def upsert_api_paths(self, api_paths: List[ApiPath]) -> List[int]:
        """Batch form of `upsert_api_path`. The order of the returned ids is not guaranteed."""
        pass

    @abstractmethod
    def get_api_paths(self, variables_link_pattern: Optional[str] = None) -> List[ApiPath]:
        """Return stored API paths, optionally filtered by a regex on the variables link."""
        pass

    @abstractmethod
    def upsert_variable(self, variable: Variable) -> int:
        """Insert a variable unless a duplicate exists; return its id."""
        pass

    @abstractmethod
    def upsert_variables(self, variables: List[Variable]) -> List[int]:
        """Batch form of `upsert_variable`. The order of the returned ids is not guaranteed."""
        pass

    @abstractmethod
    def insert_geography(self, geography: Geography) -> int:
        """Insert a geography row unconditionally; return its id."""
        pass

    @abstractmethod
    def insert_geographies(self, geographies: List[Geography]) -> List[int]:
        """Batch form of `insert_geography`."""
        pass

    @abstractmethod
    def delete_geographies(self, api_path_id: int) -> int:
        """Delete the geography rows associated with an API path; return how many."""
        pass

    @abstractmethod
    def associate_variables(self, api_path_id: int, variable_ids: List[int]) -> None:
        """Link variables to an API path. Existing links are left alone."""
        pass

    @abstractmethod
    def associate_geographies(self, api_path_id: int, geography_ids: List[int]) -> None:
        """Link geographies to an API path. Existing links are left alone."""
        pass

    @abstractmethod
    def get_latest_state(self, endpoint: str) -> Dict[str, Any]:
        """Retrieve the latest ingestion state for an endpoint."""
        pass

    @abstractmethod
    def update_state(self, endpoint: str, state: Dict[str, Any], status: str) -> None:
        """Record the outcome of ingesting an endpoint."""
        pass

    @abstractmethod
    def get_all_states(self) -> List[Dict[str, Any]]:
        """Retrieve all ingestion states from the database."""
        pass

    def __enter__(self) -> "MetadataStoreInterface":
        """Enter the context manager, returning the instance."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the context manager, ensuring disconnection."""
        self.disconnect()
