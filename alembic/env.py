# alembic env: picks up DATABASE_URL from the billing config and autogenerates against the ORM models
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from subbilling import models  # noqa: F401  (registers tables on Base.metadata)
from subbilling.config import cfg
from subbilling.db import Base

config = context.config
if cfg.DATABASE_URL:
    config.set_main_option("sqlalchemy.url", cfg.DATABASE_URL)
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    context.configure(url=config.get_main_option("sqlalchemy.url"), target_metadata=target_metadata,
                      literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(config.get_section(config.config_ini_section, {}),
                                     prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
