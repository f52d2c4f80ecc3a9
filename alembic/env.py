"""
Migration environment for fleetlink.

The database URL comes from fleetlink settings (DATABASE_URL or .env), not
from alembic.ini. SQLite runs in batch mode so ALTER TABLE works there too.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from fleetlink import models  # noqa: F401
from fleetlink.config import settings
from fleetlink.database import Base, normalize_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
url = normalize_database_url(settings.database_url)
on_sqlite = url.startswith("sqlite")

COMPARE = {"compare_type": True, "compare_server_default": True}


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(
        url,
        poolclass=pool.NullPool,
        connect_args={"check_same_thread": False} if on_sqlite else {},
    )
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=on_sqlite,
            **COMPARE,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
