from __future__ import annotations
"""Alembic environment for the custody schema.

The database URL comes from ``-x db_url=...`` when given, else from
``DATABASE_URL`` (``.env`` is honoured), matching what ``create_app`` connects to.
SQLite needs batch mode for ALTERs, so it is switched on for sqlite URLs.
"""
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
from dotenv import load_dotenv
import os, sys

# Allow importing the custody package
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from custody.models.authz import Base  # noqa: E402
# Register every table on Base.metadata for autogenerate
from custody.models import audit, asset, service_ticket, repair_order, shipment, maintenance  # noqa: E402,F401

load_dotenv()

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    return context.get_x_argument(as_dictionary=True).get('db_url') or os.getenv('DATABASE_URL', 'sqlite:///dev.db')


def _configure_kwargs(url: str) -> dict:
    return {
        'target_metadata': target_metadata,
        'compare_type': True,
        'render_as_batch': url.startswith('sqlite'),
    }


def run_migrations_offline():
    url = get_url()
    context.configure(url=url, literal_binds=True, **_configure_kwargs(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = get_url()
    section = config.get_section(config.config_ini_section) or {}
    section['sqlalchemy.url'] = url
    connectable = engine_from_config(section, prefix='sqlalchemy.', poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
