"""
Clusterplane CLI — entry point for operator tasks.

Usage:
    clusterplane keygen         # Create the vault master key
    clusterplane migrate        # Apply the database schema
    clusterplane serve          # Start the HTTP API
    clusterplane status         # Show configuration and connectivity
    clusterplane version        # Show version
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from clusterplane.models import ProviderKind

REQUIRED_TABLES = ["credentials", "clusters"]

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="clusterplane",
        description="Clusterplane — provision k3s clusters on AWS, Azure, GCP and on-prem hosts.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Create the vault master key")
    keygen_parser.add_argument("--workspace", type=str, help="Workspace dir (default: ~/.clusterplane)")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Run database migrations")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Print SQL without executing")
    migrate_parser.add_argument("--check", action="store_true", help="Check if required tables exist")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: CLUSTERPLANE_API_PORT or 3333)")

    # status
    subparsers.add_parser("status", help="Show system status")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from clusterplane import __version__

        print(f"clusterplane {__version__}")
        return 0

    if args.command == "keygen":
        return _cmd_keygen(args)
    elif args.command == "migrate":
        return _cmd_migrate(args)
    elif args.command == "serve":
        return _cmd_serve(args)
    elif args.command == "status":
        return _cmd_status(args)
    else:
        parser.print_help()
        return 0


def _cmd_keygen(args: argparse.Namespace) -> int:
    from clusterplane.config import get_config
    from clusterplane.vault.crypto import KEY_FILENAME, init_master_key

    workspace = Path(args.workspace).expanduser() if args.workspace else get_config().workspace
    existed = (workspace / KEY_FILENAME).exists()
    key_path = init_master_key(workspace)
    if existed:
        print(f"Master key already present at {key_path}")
    else:
        print(f"Master key written to {key_path}")
    return 0


def _find_migration_sql() -> str | None:
    """Find the migration SQL file bundled with the package."""
    bundled = Path(__file__).parent / "migrations" / "001_init.sql"
    if bundled.exists():
        return bundled.read_text()
    return None


def _cmd_migrate(args: argparse.Namespace) -> int:
    sql = _find_migration_sql()
    if sql is None:
        print("Error: Migration SQL not found.")
        print("Expected at: clusterplane/migrations/001_init.sql")
        return 1

    if args.check:
        return _cmd_migrate_check()

    if args.dry_run:
        print("-- Dry run: the following SQL would be executed --")
        print(sql)
        return 0

    import psycopg2

    from clusterplane.config import get_config

    cfg = get_config().db
    try:
        print(f"Connecting to {cfg.host}:{cfg.port}/{cfg.name}...")
        conn = psycopg2.connect(**cfg.dict, connect_timeout=5)
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute(sql)
        conn.close()
    except psycopg2.Error as e:
        print(f"Error: Migration failed: {e}")
        print("Check CLUSTERPLANE_DB_* environment variables and ensure PostgreSQL is running.")
        return 1

    print("Migration completed successfully.")
    return _cmd_migrate_check()


def _cmd_migrate_check() -> int:
    """Check if required tables exist in the database."""
    import psycopg2

    from clusterplane.config import get_config

    cfg = get_config().db
    try:
        conn = psycopg2.connect(**cfg.dict, connect_timeout=5)
        with conn.cursor() as cur:
            cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'")
            existing = {row[0] for row in cur.fetchall()}
        conn.close()
    except psycopg2.Error as e:
        print(f"Error: Cannot check tables: {e}")
        return 1

    missing = [t for t in REQUIRED_TABLES if t not in existing]
    if missing:
        print(f"Missing tables ({len(missing)}/{len(REQUIRED_TABLES)}):")
        for t in missing:
            print(f"  - {t}")
        print("\nRun 'clusterplane migrate' to create them.")
        return 1
    print(f"All {len(REQUIRED_TABLES)} required tables present.")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from clusterplane.config import get_config

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    port = args.port or get_config().api_port
    print(f"Starting Clusterplane API on {args.host}:{port}...")
    uvicorn.run("clusterplane.api.app:create_app", factory=True, host=args.host, port=port)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from clusterplane import __version__
    from clusterplane.config import get_config
    from clusterplane.vault.crypto import KEY_FILENAME

    cfg = get_config()
    print(f"Clusterplane v{__version__}")
    print()

    # PostgreSQL
    print(f"  PostgreSQL:  {cfg.db.host}:{cfg.db.port}/{cfg.db.name}")
    try:
        import psycopg2

        conn = psycopg2.connect(**cfg.db.dict, connect_timeout=3)
        with conn.cursor() as cur:
            cur.execute("SELECT version()")
            pg_version = cur.fetchone()[0].split(",")[0]
            cur.execute("SELECT count(*) FROM clusters")
            cluster_count = cur.fetchone()[0]
        conn.close()
        print(f"               Connected — {pg_version}")
        print(f"               {cluster_count} cluster record(s)")
    except psycopg2.Error as e:
        print(f"               UNREACHABLE — {e}")

    # Vault key
    if cfg.encryption_key:
        print("  Vault key:   from CLUSTERPLANE_ENCRYPTION_KEY")
    elif (cfg.workspace / KEY_FILENAME).exists():
        print(f"  Vault key:   {cfg.workspace / KEY_FILENAME}")
    else:
        print("  Vault key:   MISSING — run 'clusterplane keygen'")

    # Operator credentials (presence only)
    print("  Operator credentials:")
    for kind in ProviderKind:
        state = "configured" if cfg.operator.has(kind) else "not set"
        print(f"               {kind.value:<7} {state}")

    print()
    print(f"  Workspace:   {cfg.workspace}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
