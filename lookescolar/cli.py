import json
from typing import Optional

import typer

app = typer.Typer(help="lookescolar: events, tokens and housekeeping from the shell")


def _session():
    from backend.app.db import SessionLocal, get_engine

    get_engine()
    return SessionLocal()


def _echo(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@app.command()
def version():
    """Show version."""
    import importlib.metadata as md

    print(md.version("lookescolar"))


@app.command("init-db")
def init_db():
    """Create tables on DATABASE_URL (local dev / SQLite)."""
    from backend.app.db import init_db as _init

    _init()
    print("ok")


@app.command("expiring-tokens")
def expiring_tokens(days: Optional[int] = typer.Option(None, help="Threshold in days")):
    """List subject tokens expiring within the rotation threshold."""
    from backend.app.services.tokens import token_service

    with _session() as db:
        _echo(token_service.get_tokens_expiring_soon(db, days))


@app.command("rotate-token")
def rotate_token(
    subject_id: str,
    days: Optional[int] = typer.Option(None, help="Validity of the new token in days"),
):
    """Issue a new access token for a subject; the old one stops working."""
    from backend.app.models import Subject
    from backend.app.services.tokens import token_service

    with _session() as db:
        subject = db.get(Subject, subject_id)
        if subject is None:
            print(f"subject not found: {subject_id}")
            raise typer.Exit(code=1)
        subject = token_service.rotate_subject_token(db, subject, expires_in_days=days, actor="cli")
        db.commit()
        _echo({"subject_id": subject.id, "token": subject.token, "expires_at": subject.token_expires_at})


@app.command("token-metrics")
def token_metrics():
    """Token counts: total, active, expiring soon."""
    from backend.app.services.tokens import token_service

    with _session() as db:
        _echo(token_service.get_token_metrics(db))


@app.command("cleanup-audit-logs")
def cleanup_audit_logs(days: Optional[int] = typer.Option(None, help="Keep entries newer than this")):
    """Delete audit entries older than AUDIT_RETENTION_DAYS (or --days)."""
    from backend.app.services import audit

    with _session() as db:
        print(f"removed {audit.cleanup(db, days)}")


if __name__ == "__main__":
    app()
