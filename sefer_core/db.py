from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.orm.session import Session

from sefer_core.config import settings


def make_engine(url: str, **kwargs):
    engine = create_engine(url, pool_pre_ping=True, **kwargs)

    if engine.dialect.name == "postgresql":
        @event.listens_for(engine, "connect")
        def _enable_extensions(dbapi_connection, connection_record):
            # ensure pgvector + pg_trgm
            with dbapi_connection.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")
                cur.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm;")

    return engine


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker[Session](bind=engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass
