from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from entity_probe.config import get_settings

settings = get_settings()
DATABASE_URL = settings.database_url


class Base(DeclarativeBase):
    pass


connect_args: dict[str, object] = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    from entity_probe import models  # noqa: F401

    if get_settings().is_production():
        return

    Base.metadata.create_all(bind=engine)
