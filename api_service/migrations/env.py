import pathlib
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from api_service.db.models import Base
from threadboard.config.settings import AppSettings

# Register thread tables on Base.metadata for autogenerate.
from threadboard.workflows.threads import models as _thread_models  # noqa: F401

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# api_service/migrations/env.py -> project root
PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent.parent
DOTENV_PATH = PROJECT_ROOT / ".env"

# Instantiate settings locally for Alembic, ensuring .env is loaded correctly
local_settings = AppSettings(_env_file=DOTENV_PATH)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL, so no DBAPI is needed; calls to
    context.execute() emit the SQL to the script output.
    """
    url = local_settings.database.POSTGRES_URL_SYNC
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against the configured database."""
    configuration = config.get_section(config.config_ini_section) or {}

    # Use the synchronous URL from settings rather than alembic.ini
    configuration["sqlalchemy.url"] = local_settings.database.POSTGRES_URL_SYNC

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
