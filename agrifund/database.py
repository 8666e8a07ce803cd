from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from agrifund.config import DB_URL

connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}

engine = create_engine(DB_URL, echo=False, future=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def init_db(bind=None):
    # models must be imported so their tables are registered on Base.metadata
    from agrifund import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
