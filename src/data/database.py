"""
Database connection and management utilities.

Usage:
    python -m src.data.database init    # Create tables
    python -m src.data.database reset   # Drop and recreate tables
    python -m src.data.database check   # Verify connection and counts
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
import click
from rich.console import Console
from rich.table import Table

# Load environment variables
load_dotenv()

console = Console()

# Drop order respects foreign keys
TABLES = [
    "daily_runs",
    "message_events",
    "interventions",
    "coach_touches",
    "coach_assignments",
    "coaches",
    "engagement_events",
    "members",
    "tenants",
]


def get_database_url() -> str:
    """Get database URL from environment variables."""
    # Try DATABASE_URL first
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    # Fall back to individual components
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "retain_gym")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "password")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def get_engine(database_url: str | None = None) -> Engine:
    """Create and return a SQLAlchemy engine."""
    url = database_url or get_database_url()
    if url.startswith("sqlite"):
        # Route handlers are sync, so FastAPI runs them on its threadpool
        return create_engine(
            url, echo=False, connect_args={"check_same_thread": False}
        )
    return create_engine(url, echo=False, pool_pre_ping=True)


def get_memory_engine() -> Engine:
    """In-memory SQLite engine shared across threads (demo mode)."""
    return create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def get_schema_path() -> Path:
    """Get path to the SQL schema file."""
    # Look in multiple locations
    possible_paths = [
        Path("sql/schema.sql"),
        Path(__file__).parent.parent.parent / "sql" / "schema.sql",
    ]

    for path in possible_paths:
        if path.exists():
            return path

    raise FileNotFoundError(
        "Could not find schema.sql. Expected locations:\n"
        + "\n".join(f"  - {p}" for p in possible_paths)
    )


def split_statements(schema_sql: str) -> list[str]:
    """Split a schema script into executable statements, dropping comments."""
    lines = [
        line for line in schema_sql.splitlines()
        if not line.strip().startswith("--")
    ]
    statements = []
    for statement in "\n".join(lines).split(";"):
        statement = statement.strip()
        if statement:
            statements.append(statement)
    return statements


def apply_schema(engine: Engine, schema_path: Path | None = None) -> None:
    """Create all tables and indexes on the given engine."""
    path = schema_path or get_schema_path()
    with open(path) as f:
        schema_sql = f.read()

    with engine.begin() as conn:
        for statement in split_statements(schema_sql):
            conn.execute(text(statement))


def init_database():
    """Initialize database by creating all tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")

    try:
        schema_path = get_schema_path()
        console.print(f"Using schema: {schema_path}")
        apply_schema(get_engine(), schema_path)
        console.print("[bold green]✓ Database initialized successfully![/bold green]")

    except FileNotFoundError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[bold red]Error initializing database: {e}[/bold red]")
        sys.exit(1)


def reset_database():
    """Drop all tables and recreate them."""
    console.print("[bold yellow]Resetting database...[/bold yellow]")

    try:
        engine = get_engine()
        with engine.begin() as conn:
            for table_name in TABLES:
                conn.execute(text(f"DROP TABLE IF EXISTS {table_name}"))

        console.print("[yellow]Tables dropped.[/yellow]")
        init_database()

    except Exception as e:
        console.print(f"[bold red]Error resetting database: {e}[/bold red]")
        sys.exit(1)


def check_database():
    """Check database connection and show table counts."""
    console.print("[bold blue]Checking database connection...[/bold blue]")

    try:
        engine = get_engine()

        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            console.print("[green]✓ Connection successful![/green]")

            table = Table(title="Table Row Counts")
            table.add_column("Table", style="cyan")
            table.add_column("Rows", justify="right", style="green")

            total_rows = 0
            for table_name in reversed(TABLES):
                try:
                    count = conn.execute(
                        text(f"SELECT COUNT(*) FROM {table_name}")
                    ).scalar_one()
                    table.add_row(table_name, f"{count:,}")
                    total_rows += count
                except Exception:
                    conn.rollback()
                    table.add_row(table_name, "[red]Table not found[/red]")

            table.add_row("─" * 20, "─" * 10)
            table.add_row("[bold]Total[/bold]", f"[bold]{total_rows:,}[/bold]")

            console.print(table)

    except Exception as e:
        console.print(f"[bold red]Error connecting to database: {e}[/bold red]")
        console.print("\n[yellow]Troubleshooting tips:[/yellow]")
        console.print("  1. Ensure PostgreSQL is running")
        console.print("  2. Check your .env file has correct credentials")
        console.print("  3. Ensure the database exists: createdb retain_gym")
        sys.exit(1)


# =============================================================================
# CLI
# =============================================================================

@click.group()
def cli():
    """Database management commands."""
    pass


@cli.command()
def init():
    """Create database tables."""
    init_database()


@cli.command()
def reset():
    """Drop and recreate all tables."""
    reset_database()


@cli.command()
def check():
    """Check database connection and show table counts."""
    check_database()


if __name__ == "__main__":
    cli()
