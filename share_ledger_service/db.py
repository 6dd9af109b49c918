from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from common.settings import settings

_engine: Optional[Engine] = None

def make_engine(url: Optional[str] = None) -> Engine:
    url = url or settings.sqlalchemy_url
    if url.startswith("sqlite"):
        # in-memory databases must share one connection across sessions
        pool = {"poolclass": StaticPool} if url in ("sqlite://", "sqlite:///:memory:") else {}
        return create_engine(url, connect_args={"check_same_thread": False}, **pool)
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine()
    return _engine

def make_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    return sessionmaker(bind=engine or get_engine(), expire_on_commit=False)
