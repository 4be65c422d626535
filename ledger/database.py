import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from ledger.config import (
    database_url,
    db_max_overflow,
    db_pool_recycle_seconds,
    db_pool_size,
    db_pool_timeout_seconds,
    sql_echo,
)

logger = logging.getLogger(__name__)


def engine_options(url: str) -> dict:
    # SQLite: no pool tuning, connections are handed across request threads.
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    options = {
        "pool_size": db_pool_size(),
        "max_overflow": db_max_overflow(),
        "pool_recycle": db_pool_recycle_seconds(),
        "pool_timeout": db_pool_timeout_seconds(),
        "pool_pre_ping": True,
    }
    logger.info(
        "db pooling enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
        options["pool_size"],
        options["max_overflow"],
        options["pool_timeout"],
        options["pool_recycle"],
    )
    return options


DATABASE_URL = database_url()

engine = create_engine(DATABASE_URL, echo=sql_echo(), **engine_options(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
