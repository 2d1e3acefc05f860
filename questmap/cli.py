"""
Questmap CLI - command line interface for the adventure engine.

Usage:
    questmap run              Start the API server
    questmap db upgrade       Run database migrations
    questmap db init          Create tables directly and stamp them as current
    questmap worlds           List the world catalog
    questmap credits retry    Re-deliver pending XP credits
    questmap reset USER_ID    Delete one user's adventure progress
"""

import asyncio
import sys
from pathlib import Path

import click

from questmap import __version__, config


def _alembic_config():
    from alembic.config import Config

    # Look for alembic.ini in current directory or use package default
    alembic_ini = Path("alembic.ini")
    alembic_cfg = Config(str(alembic_ini)) if alembic_ini.exists() else Config()
    # Always the package's own migrations, against the configured database
    alembic_cfg.set_main_option("script_location", str(Path(__file__).parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return alembic_cfg


def _run_with_engine(operation):
    """Build an AdventureEngine against the configured database and run ``operation(engine)``."""
    from questmap.db import init_db, make_engine
    from questmap.main import build_engine

    async def runner():
        db_engine = make_engine(config.DATABASE_URL)
        try:
            await init_db(db_engine)
            return await operation(build_engine(db_engine))
        finally:
            await db_engine.dispose()

    return asyncio.run(runner())


@click.group()
@click.version_option(version=__version__, prog_name="questmap")
def main():
    """Questmap - adventure progression on top of your to-do list."""
    from questmap.logging import configure_logging

    configure_logging(config.LOG_LEVEL)


@main.command()
@click.option("--host", "-h", default=config.HOST, help="Host to bind to")
@click.option("--port", "-p", default=config.PORT, type=int, help="Port to bind to")
@click.option("--reload", "-r", is_flag=True, help="Enable auto-reload for development")
def run(host: str, port: int, reload: bool):
    """Start the adventure API server."""
    import uvicorn

    click.echo(f"⏳ Starting Questmap on {host}:{port}...")
    uvicorn.run(
        "questmap.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.LOG_LEVEL.lower(),
    )


@main.group()
def db():
    """Database management commands."""
    pass


@db.command()
@click.option("--revision", "-r", default="head", help="Revision to upgrade to")
def upgrade(revision: str):
    """Run database migrations to upgrade the schema."""
    from alembic import command

    click.echo("🗃️ Running migrations...")
    try:
        command.upgrade(_alembic_config(), revision)
        click.echo(click.style("✅ Database upgraded successfully!", fg="green"))
    except Exception as e:
        click.echo(click.style(f"Error: {e}", fg="red"))
        sys.exit(1)


@db.command()
@click.option("--revision", "-r", default="-1", help="Revision to downgrade to")
def downgrade(revision: str):
    """Downgrade the database schema."""
    from alembic import command

    try:
        command.downgrade(_alembic_config(), revision)
        click.echo(click.style("✅ Database downgraded successfully!", fg="green"))
    except Exception as e:
        click.echo(click.style(f"Error: {e}", fg="red"))
        sys.exit(1)


@db.command()
def current():
    """Show current database revision."""
    from alembic import command

    command.current(_alembic_config())


@db.command(name="init")
def init_schema():
    """Create all tables from the models and mark the schema as up to date."""
    from alembic import command

    from questmap.db import init_db, make_engine

    async def create():
        db_engine = make_engine(config.DATABASE_URL)
        try:
            await init_db(db_engine)
        finally:
            await db_engine.dispose()

    asyncio.run(create())
    command.stamp(_alembic_config(), "head")
    click.echo(click.style("✅ Database initialized", fg="green"))


@main.command()
def worlds():
    """List the world catalog."""
    from questmap.engine.catalog import WorldCatalog

    catalog = WorldCatalog.from_yaml(config.WORLD_DATA)
    for world in catalog:
        click.echo(
            f"{world.icon} {world.number}. {world.display_name:<18} "
            f"x{world.difficulty_modifier:<4} boss: {world.boss.name} ({world.boss.reward_xp} XP)"
        )


@main.group()
def credits():
    """XP credit ledger commands."""
    pass


@credits.command()
@click.option("--user", "-u", "user_id", default=None, help="Only retry this user's credits")
def retry(user_id):
    """Re-deliver pending XP credits."""
    result = _run_with_engine(lambda engine: engine.retry_pending_credits(user_id))
    click.echo(
        f"🔁 Attempted {result['attempted']}, credited {result['credited']}, "
        f"still pending {result['pending']}"
    )
    if result["pending"]:
        sys.exit(1)


@main.command()
@click.argument("user_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def reset(user_id: str, yes: bool):
    """Delete every adventure record of USER_ID."""
    if not yes and not click.confirm(f"Delete all adventure progress for {user_id}?", default=False):
        click.echo("Cancelled.")
        return
    removed = _run_with_engine(lambda engine: engine.reset_user(user_id))
    click.echo(click.style(f"🧹 Removed {removed} rows for {user_id}", fg="green"))


if __name__ == "__main__":
    main()
