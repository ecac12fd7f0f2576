"""Database connection and initialization."""

from sqlmodel import SQLModel, Session, create_engine

from lifesign.config import settings

# Import all models so SQLModel registers them
import lifesign.models  # noqa: F401


def make_engine(db_path=None, echo: bool = False):
    """Create a SQLite engine shared across request and worker threads."""
    return create_engine(
        f"sqlite:///{db_path or settings.db_path}",
        echo=echo,
        connect_args={"check_same_thread": False},
    )


engine = make_engine(echo=settings.debug)


def init_db(bind=None) -> None:
    """Create all tables and enable WAL mode."""
    bind = bind or engine
    SQLModel.metadata.create_all(bind)

    # WAL lets the monitor thread read while the API writes
    with bind.connect() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()


def get_session():
    """FastAPI dependency: yields a database session."""
    with Session(engine) as session:
        yield session
