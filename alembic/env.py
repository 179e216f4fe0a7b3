import logging
from logging.config import fileConfig

from alembic import context

# alembic.ini prepends the repository root to sys.path.
from config import get_settings
from database import Base, create_db_engine
import models  # noqa: F401  registers the ledger tables on Base.metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")


def _ledger_url() -> str:
    # An explicit -x url=... or sqlalchemy.url wins over LEDGER_DATABASE_URL.
    override = context.get_x_argument(as_dictionary=True).get("url")
    return override or config.get_main_option("sqlalchemy.url") or get_settings().database_url


def run_offline(url: str) -> None:
    logger.info(f"ledger_migrations: mode=offline url={url}")
    context.configure(
        url=url,
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    # Same engine factory as the app, so SQLite gets its WAL/foreign-key pragmas.
    engine = create_db_engine(url)
    logger.info(f"ledger_migrations: mode=online url={engine.url!r}")
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=Base.metadata,
                render_as_batch=True,
                compare_type=True,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline(_ledger_url())
else:
    run_online(_ledger_url())
