import logging
import os

import typer
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from errors import LedgerError
from ledger import LoanLedger
from models import Setting, init_db
from settings import update_setting

load_dotenv()

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///library.db")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

engine = create_engine(DATABASE_URL)
Session = sessionmaker(bind=engine, expire_on_commit=False)

app = typer.Typer(help="Loan ledger maintenance: schema setup, scheduled sweeps and settings.")


@app.callback()
def configure(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else LOG_LEVEL.upper(),
        format="%(levelname)s: %(message)s",
    )


def get_ledger() -> LoanLedger:
    return LoanLedger(Session)


def fail(message: str):
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_database():
    """Create the library tables and seed the default settings."""
    added = init_db(engine)
    typer.echo(f"Schema ready, {added} default setting(s) added")


# Meant for cron or a systemd timer.
@app.command()
def sweep():
    """Mark overdue loans, accrue their fines and expire stale reservations.

    Overlapping runs skip themselves on PostgreSQL. On other databases the
    guard only covers one process; two sweeps on a SQLite file fall back on
    SQLite refusing the second writer.
    """
    ledger = get_ledger()
    try:
        overdue = ledger.mark_overdue()
        expired = ledger.expire_reservations()
    except LedgerError as exc:
        fail(f"Sweep failed: {exc}")
    typer.echo(f"{len(overdue)} loan(s) marked overdue, {len(expired)} reservation(s) expired")


@app.command()
def audit():
    """Check every book's available copies against its open loans."""
    mismatches = get_ledger().audit_availability()
    if not mismatches:
        typer.echo("All books consistent")
        return
    for mismatch in mismatches:
        typer.echo(
            f"Book {mismatch.book_id} ({mismatch.title}): stored {mismatch.stored}, expected {mismatch.expected}"
        )
    raise typer.Exit(code=1)


@app.command("settings")
def list_settings():
    """Show the library-wide settings."""
    session = Session()
    try:
        for setting in session.query(Setting).order_by(Setting.name).all():
            typer.echo(f"{setting.name} = {setting.value}")
    finally:
        session.close()


@app.command("set-setting")
def set_setting(name: str, value: str):
    """Change a setting after checking the value parses for its type."""
    session = Session()
    try:
        update_setting(session, name, value)
        session.commit()
    except LedgerError as exc:
        session.rollback()
        fail(str(exc))
    finally:
        session.close()
    typer.echo(f"{name} set to {value.strip()}")


if __name__ == "__main__":
    app()
