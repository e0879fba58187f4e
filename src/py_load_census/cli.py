import logging
from datetime import datetime
from typing import Any, Dict, Optional

import psycopg2
import typer
from rich.console import Console
from rich.table import Table

from py_load_census import schemas
from py_load_census.config import load_config
from py_load_census.interfaces import MetadataStoreInterface
from py_load_census.logging_config import setup_logging
from py_load_census.models import IngestSummary
from py_load_census.orchestrator import Orchestrator, get_db_adapter

app = typer.Typer(help="Load US Census API metadata into a PostgreSQL cache.")
console = Console()


def _setup_logging(config: Dict[str, Any]) -> None:
    logging_config = config.get("logging", {})
    setup_logging(
        level=logging_config.get("level", "INFO"),
        log_format=logging_config.get("format", "text"),
    )


def _adapter_for(config: Dict[str, Any]) -> MetadataStoreInterface:
    db_config = config.get("database", {})
    return get_db_adapter(
        db_config.get("type", "postgres"),
        schema=db_config.get("schema") or "public",
    )


def _format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


@app.command()
def init_db() -> None:
    """
    Initialize the database: the metadata tables, their hashing functions
    and the ingestion state table.
    """
    try:
        config = load_config()
        _setup_logging(config)
        logging.info("Initializing database...")

        with _adapter_for(config) as adapter:
            adapter.connect(config.get("database", {}))
            adapter.ensure_schema(schemas.METADATA_SCHEMA)
            adapter.ensure_schema(schemas.INGESTION_STATE_SCHEMA)
            adapter.commit()

        logging.info("✅ Database initialization complete.")
    except (FileNotFoundError, ConnectionError, ValueError, psycopg2.Error) as e:
        logging.error(f"❌ Database initialization failed: {e}", exc_info=True)
        raise typer.Exit(code=1)


def _print_summary(summary: IngestSummary) -> None:
    table = Table(title="Ingestion Summary", show_header=True, header_style="bold magenta")
    table.add_column("Endpoint", style="dim")
    table.add_column("Status")
    table.add_column("Variables", justify="right")
    table.add_column("Geographies", justify="right")
    table.add_column("Error")

    for result in sorted(summary.results, key=lambda r: r.endpoint):
        status_style = "green" if result.ok else "red"
        table.add_row(
            result.endpoint,
            f"[{status_style}]{result.status}[/{status_style}]",
            str(result.variables_count),
            str(result.geography_count),
            result.error or "",
        )

    console.print(table)
    console.print(
        f"{summary.processed} endpoints processed, "
        f"{len(summary.succeeded)} succeeded, {len(summary.failed)} failed."
    )


@app.command()
def run(
    pattern: Optional[str] = typer.Option(
        None, "--pattern", help="Regular expression selecting endpoints by variables link. Overrides config."
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", min=1, help="Number of endpoints ingested in parallel. Overrides config."
    ),
) -> None:
    """
    Run one ingestion pass: the dataset index, then the variables and
    geography of every selected endpoint. Exits with status 1 if any
    endpoint failed.
    """
    try:
        config = load_config()
        orchestrator = Orchestrator(config=config, variables_link_pattern=pattern, workers=workers)
        summary = orchestrator.run()
    except Exception as e:
        # Endpoint failures are reported in the summary; anything reaching
        # here stopped the run as a whole.
        logging.error(f"CLI-level error: An unexpected error occurred during the run: {e}")
        raise typer.Exit(code=1)

    _print_summary(summary)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


@app.command()
def status(
    endpoint: Optional[str] = typer.Option(
        None, "--endpoint", help="Variables link of a single endpoint to show."
    ),
) -> None:
    """
    Show the outcome of the last ingestion of every endpoint, or of one.
    """
    try:
        config = load_config()
        _setup_logging(config)

        with _adapter_for(config) as adapter:
            adapter.connect(config.get("database", {}))
            if endpoint:
                state = adapter.get_latest_state(endpoint)
                states = [state] if state else []
            else:
                states = adapter.get_all_states()
    except Exception as e:
        console.print(f"[bold red]❌ Failed to get status: {e}[/bold red]")
        logging.debug("Full exception details:", exc_info=True)
        raise typer.Exit(code=1)

    if not states:
        if endpoint:
            console.print(f"No ingestion state found for {endpoint}.")
        else:
            console.print("No ingestion state found in the database.")
        return

    table = Table(title="Ingestion Status", show_header=True, header_style="bold magenta")
    table.add_column("Endpoint", style="dim")
    table.add_column("Status")
    table.add_column("Variables", justify="right")
    table.add_column("Geographies", justify="right")
    table.add_column("Last Run (UTC)")
    table.add_column("Last Successful Run (UTC)")
    table.add_column("Pipeline Version")

    for state in states:
        state_status = state.get("status") or "UNKNOWN"
        status_style = "green" if state_status == "SUCCESS" else "red" if state_status == "FAILED" else "yellow"
        table.add_row(
            state.get("endpoint", "N/A"),
            f"[{status_style}]{state_status}[/{status_style}]",
            str(state.get("variables_count") or 0),
            str(state.get("geography_count") or 0),
            _format_date(state.get("last_run_ts_utc")),
            _format_date(state.get("last_successful_run_ts_utc")),
            state.get("pipeline_version") or "N/A",
        )

    console.print(table)


@app.command()
def check_config() -> None:
    """
    Validate configuration and database connectivity.
    """
    try:
        config = load_config()
        _setup_logging(config)
        logging.info("✅ Configuration file loaded successfully.")

        db_config = config.get("database", {})
        adapter_type = db_config.get("type")
        if not adapter_type:
            raise ValueError("Database 'type' not specified in config.")
        logging.info(f"▶️ Database adapter type: {adapter_type}")

        with _adapter_for(config) as adapter:
            logging.info("▶️ Attempting to connect to the database...")
            adapter.connect(db_config)
            adapter.commit()

        logging.info("✅ Configuration check passed. Database connection successful.")
    except (FileNotFoundError, ConnectionError, ValueError, NotImplementedError, psycopg2.Error) as e:
        logging.error(f"❌ Configuration check failed: {e}", exc_info=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
