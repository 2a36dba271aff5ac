"""Connector Hub CLI tool (connector-hub)."""

import typer

app = typer.Typer(name="connector-hub", help="Connector Hub CLI")
db_app = typer.Typer(help="Database management commands")
keys_app = typer.Typer(help="Credential vault key commands")
sync_app = typer.Typer(help="Sync run commands")
app.add_typer(db_app, name="db")
app.add_typer(keys_app, name="keys")
app.add_typer(sync_app, name="sync")


@db_app.command("create")
def db_create():
    """Create the MySQL database if it doesn't exist."""
    import pymysql
    from sqlalchemy.engine import make_url
    from connector_hub.core.config import settings

    url = make_url(settings.DATABASE_URL)
    if not url.drivername.startswith("mysql"):
        typer.echo(f"Nothing to create for {url.drivername}; tables are created on demand")
        raise typer.Exit()

    conn = pymysql.connect(
        host=url.host or "localhost",
        port=url.port or 3306,
        user=url.username,
        password=url.password or "",
    )
    try:
        cursor = conn.cursor()
        cursor.execute(
            f"CREATE DATABASE IF NOT EXISTS `{url.database}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        conn.commit()
        typer.echo(f"Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("create-tables")
def db_create_tables():
    """Create all connector tables that don't exist yet."""
    import connector_hub.models  # noqa: F401
    from connector_hub.db.base import Base
    from connector_hub.db.session import engine

    Base.metadata.create_all(bind=engine)
    typer.echo(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")


@db_app.command("seed")
def db_seed():
    """Seed the connector catalog."""
    from connector_hub.db.session import SessionLocal
    from connector_hub.db.seeds.seed_connector_types import seed_connector_types

    db = SessionLocal()
    try:
        added = seed_connector_types(db)
    finally:
        db.close()
    typer.echo(f"Connector catalog seeded ({added} new)")


@keys_app.command("generate")
def keys_generate():
    """Print a fresh key for CONNECTOR_ENCRYPTION_KEY."""
    from connector_hub.core.vault import CredentialVault

    typer.echo(CredentialVault.generate_key())


@sync_app.command("trigger")
def sync_trigger(
    tenant_id: int = typer.Argument(..., help="Tenant ID"),
    connector_id: int = typer.Argument(..., help="Connector ID"),
    direction: str = typer.Option("inbound", help="inbound, outbound or bidirectional"),
    entity: list[str] = typer.Option(None, "--entity", "-e", help="Entity type, repeatable"),
    inline: bool = typer.Option(False, help="Run in this process instead of queueing to Celery"),
):
    """Start a manual sync for a connector."""
    from connector_hub.core.exceptions import ConnectorHubError
    from connector_hub.db.session import SessionLocal
    from connector_hub.executor.engine import SyncExecutor
    from connector_hub.services.sync_service import SyncService

    db = SessionLocal()
    try:
        dispatch = (lambda sync_log_id: None) if inline else None
        try:
            log = SyncService(db, dispatch=dispatch).start_sync(
                tenant_id, connector_id, direction=direction, entity_types=entity or None,
            )
        except ConnectorHubError as e:
            typer.echo(f"Sync not started: {e.message}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Sync {log.id} queued")
        if inline:
            result = SyncExecutor(db).execute(log.id)
            typer.echo(result)
    finally:
        db.close()


@sync_app.command("reap")
def sync_reap():
    """Fail stuck runs and re-queue pending ones once, outside the beat schedule."""
    from connector_hub.db.session import SessionLocal
    from connector_hub.services.sync_service import SyncService

    db = SessionLocal()
    try:
        result = SyncService(db).reap_stale()
    finally:
        db.close()
    typer.echo(f"Failed {result['failed']} run(s), re-dispatched {result['redispatched']}")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(True, help="Auto-reload"),
):
    """Start the FastAPI development server."""
    import uvicorn
    uvicorn.run("connector_hub.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
