import os

import pytest
from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from ghtrends.config import Settings
from ghtrends.db import Base, Store, create_store_engine, make_sessionmaker

load_dotenv()


@pytest.fixture(scope="session")
def db_engine():
    # Re‑create schema on a temp database (use the same container)
    url = os.getenv("GHTRENDS_TEST_DATABASE_URL") or Settings().db_url
    engine = create_store_engine(url)
    try:
        with engine.connect():
            pass
    except OperationalError as exc:
        engine.dispose()
        pytest.skip(f"PostgreSQL not reachable: {exc}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def store(db_engine):
    """Store over freshly truncated tables."""
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(text(f"TRUNCATE TABLE {table.name} RESTART IDENTITY CASCADE"))
    return Store(make_sessionmaker(db_engine))
