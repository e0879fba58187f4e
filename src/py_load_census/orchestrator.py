import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional

import psycopg2
import requests

from py_load_census.extractor import DEFAULT_INDEX_URL, CensusExtractor
from py_load_census.interfaces import MetadataStoreInterface
from py_load_census.logging_config import setup_logging
from py_load_census.models import ApiPath, EndpointResult, IngestSummary
from py_load_census.parser import ApiIndexParser, GeographyParser, VariablesParser
from py_load_census.schemas import VARIABLES_DEDUP_CONSTRAINT

# Failures that abort one endpoint but not the run: transport, payload, storage.
ENDPOINT_ERRORS = (requests.RequestException, ValueError, psycopg2.Error)


def get_db_adapter(db_type: str, schema: str = "public", batch_size: int = 5000) -> MetadataStoreInterface:
    """
    Factory function for metadata store adapters.
    Imports are done locally so that unused backends are never imported.
    """
    if db_type == "postgres":
        from py_load_census.adapters.postgres import PostgreSQLAdapter

        return PostgreSQLAdapter(schema=schema, batch_size=batch_size)
    raise NotImplementedError(f"Database type '{db_type}' is not supported.")


class Orchestrator:
    """
    Drives one ingestion pass: loads the dataset index, then the variables and
    geography of every endpoint whose variables link matches the pattern.

    Each endpoint is ingested in its own transaction. A failing endpoint is
    rolled back, logged and recorded, and the run moves on to the next one.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        variables_link_pattern: Optional[str] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.config = config
        ingest_config = self.config.get("ingest", {})
        self.index_url = ingest_config.get("index_url", DEFAULT_INDEX_URL)
        self.variables_link_pattern = variables_link_pattern or ingest_config.get("variables_link_pattern")
        self.workers = max(1, workers or ingest_config.get("workers", 1))
        self.batch_size = ingest_config.get("batch_size", 5000)

        self.index_parser = ApiIndexParser()
        self.variables_parser = VariablesParser()
        self.geography_parser = GeographyParser()

        logging_config = self.config.get("logging", {})
        setup_logging(
            level=logging_config.get("level", "INFO"),
            log_format=logging_config.get("format", "text"),
        )
        logging.info(f"Orchestrator initialized (pattern: {self.variables_link_pattern!r}, workers: {self.workers}).")

    def _new_adapter(self) -> MetadataStoreInterface:
        db_config = self.config.get("database", {})
        adapter = get_db_adapter(
            db_config.get("type", "postgres"),
            schema=db_config.get("schema") or "public",
            batch_size=self.batch_size,
        )
        adapter.connect(db_config)
        return adapter

    def _new_extractor(self) -> CensusExtractor:
        cache_config = self.config.get("cache", {})
        extractor_settings = self.config.get("extractor_settings", {})
        return CensusExtractor(
            cache_dir=cache_config.get("dir", "./cache"),
            use_cache=cache_config.get("enabled", True),
            **extractor_settings,
        )

    def run(self) -> IngestSummary:
        """
        Executes one full ingestion pass and returns its summary.

        Failures before any endpoint is processed (connection, missing schema,
        unreadable index) are fatal and propagate.
        """
        summary = IngestSummary()
        adapter = self._new_adapter()
        extractor = self._new_extractor()
        try:
            with adapter:
                self._check_schema(adapter)
                summary.api_paths_count = self._load_index(adapter, extractor)

                targets = adapter.get_api_paths(self.variables_link_pattern)
                adapter.commit()
                logging.info(f"{len(targets)} endpoints selected for ingestion.")

                if self.workers > 1 and len(targets) > 1:
                    summary.results.extend(self._run_parallel(targets))
                else:
                    summary.results.extend(self._ingest_endpoints(adapter, extractor, targets))
        finally:
            extractor.close()

        logging.info(
            f"Ingestion finished: {summary.processed} endpoints processed, "
            f"{len(summary.succeeded)} succeeded, {len(summary.failed)} failed."
        )
        return summary

    def _check_schema(self, adapter: MetadataStoreInterface) -> None:
        constraints = adapter.get_unique_constraints("variables")
        if VARIABLES_DEDUP_CONSTRAINT not in constraints:
            raise RuntimeError(
                f"Expected unique constraint '{VARIABLES_DEDUP_CONSTRAINT}' on the variables table, "
                f"found {constraints}. Run 'init-db' first."
            )

    def _load_index(self, adapter: MetadataStoreInterface, extractor: CensusExtractor) -> int:
        """Fetches the dataset index and upserts every API path it lists."""
        logging.info(f"Loading the dataset index from {self.index_url}")
        api_paths = self.index_parser.parse(extractor.fetch_json(self.index_url))
        try:
            ids = adapter.upsert_api_paths(api_paths)
            adapter.commit()
        except psycopg2.Error:
            adapter.rollback()
            raise
        logging.info(f"{len(ids)} API paths present in the store.")
        return len(ids)

    def _run_parallel(self, targets: List[ApiPath]) -> List[EndpointResult]:
        chunks = [targets[i :: self.workers] for i in range(self.workers)]
        chunks = [chunk for chunk in chunks if chunk]
        results: List[EndpointResult] = []
        with ThreadPoolExecutor(max_workers=len(chunks), thread_name_prefix="ingest-worker") as ex:
            futures = [ex.submit(self._run_worker, chunk) for chunk in chunks]
            for fut in as_completed(futures):
                results.extend(fut.result())
        return results

    def _run_worker(self, targets: List[ApiPath]) -> List[EndpointResult]:
        """Ingests a share of the endpoints on a connection and session of its own."""
        try:
            adapter = self._new_adapter()
        except ConnectionError as e:
            logging.error(f"Worker could not connect to the database: {e}")
            return [EndpointResult(t.c_variables_link, "FAILED", error=str(e)) for t in targets]

        extractor = self._new_extractor()
        try:
            with adapter:
                return self._ingest_endpoints(adapter, extractor, targets)
        finally:
            extractor.close()

    def _ingest_endpoints(
        self, adapter: MetadataStoreInterface, extractor: CensusExtractor, targets: List[ApiPath]
    ) -> List[EndpointResult]:
        return [self._ingest_endpoint(adapter, extractor, api_path) for api_path in targets]

    def _ingest_endpoint(
        self, adapter: MetadataStoreInterface, extractor: CensusExtractor, api_path: ApiPath
    ) -> EndpointResult:
        """
        Fetches and stores one endpoint's variables and geography in a single
        transaction. The endpoint's previous geography rows are replaced.
        """
        endpoint = api_path.c_variables_link
        if api_path.id is None:
            raise ValueError(f"API path '{api_path.label}' has not been stored yet.")

        try:
            variables = self.variables_parser.parse(extractor.fetch_json(api_path.c_variables_link))
            geographies = self.geography_parser.parse(extractor.fetch_json(api_path.c_geography_link))

            variable_ids = adapter.upsert_variables(variables)
            adapter.associate_variables(api_path.id, variable_ids)

            adapter.delete_geographies(api_path.id)
            geography_ids = adapter.insert_geographies(geographies)
            adapter.associate_geographies(api_path.id, geography_ids)

            adapter.commit()
            result = EndpointResult(
                endpoint,
                "SUCCESS",
                variables_count=len(variable_ids),
                geography_count=len(geography_ids),
            )
            logging.info(
                f"Ingested {api_path.label}: {len(variable_ids)} variables, {len(geography_ids)} geographies.",
                extra={"endpoint": endpoint},
            )
        except ENDPOINT_ERRORS as e:
            self._rollback(adapter, endpoint)
            logging.error(f"Ingestion of {api_path.label} failed: {e}", extra={"endpoint": endpoint})
            result = EndpointResult(endpoint, "FAILED", error=str(e))

        self._record_state(adapter, api_path, result)
        return result

    def _record_state(self, adapter: MetadataStoreInterface, api_path: ApiPath, result: EndpointResult) -> None:
        state = {
            "api_paths_id": api_path.id,
            "variables_count": result.variables_count,
            "geography_count": result.geography_count,
            "last_error": result.error,
        }
        try:
            adapter.update_state(result.endpoint, state=state, status=result.status)
            adapter.commit()
        except psycopg2.Error as e:
            logging.error(f"Could not record ingestion state: {e}", extra={"endpoint": result.endpoint})
            self._rollback(adapter, result.endpoint)

    @staticmethod
    def _rollback(adapter: MetadataStoreInterface, endpoint: str) -> None:
        """Rolls back the endpoint's transaction. A dead connection is logged, not raised."""
        try:
            adapter.rollback()
        except psycopg2.Error as e:
            logging.error(f"Rollback failed: {e}", extra={"endpoint": endpoint})
