"""
Medsync CLI Interface
Command line interface implemented using Typer
"""

import asyncio
import json
from typing import Optional

import typer
import uvicorn

from medsync.config.loader import get_config
from medsync.core.engine import get_engine
from medsync.core.errors import MedsyncError
from medsync.core.logger import get_logger, setup_logging

logger = get_logger(__name__)

app = typer.Typer(help="Medication event-sourcing and orchestration engine")


def _load(config_file: Optional[str]) -> None:
    if config_file:
        get_config(config_file)
        setup_logging()


def _echo(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Server host address (default: server.host)"),
    port: Optional[int] = typer.Option(None, help="Server port (default: server.port)"),
    config_file: Optional[str] = typer.Option(None, help="Configuration file path"),
    debug: bool = typer.Option(False, help="Enable debug mode"),
):
    """Start the Medsync API server"""
    _load(config_file)
    config = get_config()
    host = host or config.get("server.host", "0.0.0.0")
    port = port or config.get("server.port", 8000)
    debug = debug or bool(config.get("server.debug", False))

    logger.info("Starting Medsync API server...")
    logger.info(f"Host: {host}, Port: {port}")
    logger.info(f"Debug mode: {debug}")

    uvicorn.run(
        "medsync.app:app",
        host=host,
        port=port,
        reload=debug,
        log_level="debug" if debug else "info",
    )


@app.command("init-db")
def init_db(
    config_file: Optional[str] = typer.Option(None, help="Configuration file path"),
):
    """Initialize database"""
    _load(config_file)
    logger.info("Initializing database...")
    try:
        from medsync.core.db import get_db

        storage = get_db()
    except MedsyncError as e:
        logger.error(f"Database initialization failed: {e}")
        raise typer.Exit(1)
    typer.echo(f"Database ready: {storage.db_path}")


@app.command("detect-missed")
def detect_missed(
    config_file: Optional[str] = typer.Option(None, help="Configuration file path"),
):
    """Flag overdue scheduled doses as missed"""
    _load(config_file)
    result = asyncio.run(get_engine().orchestrator.process_missed_medication_detection())
    _echo(result.model_dump(mode="json"))
    if not result.success:
        raise typer.Exit(1)


@app.command("daily-reset")
def daily_reset(
    patient_id: Optional[str] = typer.Option(None, help="Patient to reset"),
    timezone: Optional[str] = typer.Option(None, help="IANA timezone (default: patient preference)"),
    dry_run: bool = typer.Option(False, help="Compute the summary without writing"),
    all_patients: bool = typer.Option(False, "--all", help="Reset every known patient"),
    config_file: Optional[str] = typer.Option(None, help="Configuration file path"),
):
    """Summarize and archive the previous local day"""
    _load(config_file)
    service = get_engine().daily_reset

    if all_patients:
        results = service.run_for_all_patients(dry_run=dry_run)
        _echo([r.model_dump(mode="json") for r in results])
        if not all(r.success for r in results):
            raise typer.Exit(1)
        return

    if not patient_id:
        typer.echo("Either --patient-id or --all is required", err=True)
        raise typer.Exit(2)

    result = service.execute_daily_reset(
        patient_id, timezone or service.timezone_for(patient_id), dry_run=dry_run
    )
    _echo(result.model_dump(mode="json"))
    if not result.success:
        raise typer.Exit(1)


@app.command("regenerate-schedule")
def regenerate_schedule(
    command_id: str = typer.Argument(..., help="Medication command id"),
    config_file: Optional[str] = typer.Option(None, help="Configuration file path"),
):
    """Replace future scheduled doses of a medication"""
    _load(config_file)
    result = get_engine().orchestrator.regenerate_scheduled_events(command_id)
    _echo(result)
    if not result["success"]:
        raise typer.Exit(1)


def main():
    """Main function"""
    app()


if __name__ == "__main__":
    main()
