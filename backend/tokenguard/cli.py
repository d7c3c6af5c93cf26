import typer
from sqlalchemy.orm import Session
from tokenguard.core.database import SessionLocal
from tokenguard.core.security import hash_password
from tokenguard.models import User
from tokenguard.services.registry import RefreshTokenRegistry
from tokenguard.services.retention import sweep_refresh_tokens

app = typer.Typer()


@app.command()
def create_user(username: str, password: str = typer.Option(..., prompt=True, hide_input=True)):
    db: Session = SessionLocal()
    try:
        existing = db.query(User).filter(User.username == username).first()
        if existing:
            typer.echo("User already exists")
            return
        db.add(User(username=username, hashed_password=hash_password(password)))
        db.commit()
        typer.echo("User created")
    finally:
        db.close()


@app.command()
def revoke_family(family_id: str):
    db: Session = SessionLocal()
    try:
        revoked = RefreshTokenRegistry(db).revoke_family(family_id)
        typer.echo(f"Revoked {revoked} tokens")
    finally:
        db.close()


@app.command()
def revoke_user(username: str):
    db: Session = SessionLocal()
    try:
        user = db.query(User).filter(User.username == username).first()
        if not user:
            typer.echo("User not found")
            raise typer.Exit(code=1)
        revoked = RefreshTokenRegistry(db).revoke_user(user.id)
        typer.echo(f"Revoked {revoked} tokens")
    finally:
        db.close()


@app.command()
def sweep(include_revoked: bool = False):
    db: Session = SessionLocal()
    try:
        deleted = sweep_refresh_tokens(db, include_revoked=include_revoked or None)
        typer.echo(f"Deleted {deleted} tokens")
    finally:
        db.close()


if __name__ == "__main__":
    app()
