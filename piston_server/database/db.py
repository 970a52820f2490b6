# piston_server/database/db.py

from    contextlib                  import contextmanager
from    sqlalchemy.exc              import SQLAlchemyError
from    sqlmodel                    import SQLModel, Session, create_engine

from    piston_server.config.settings   import settings
from    piston_server.services.errors   import PersistenceError

DATABASE_URL = settings.database_url

# Scheduler jobs and API requests run on different threads
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)

def init_db(bind=None):
    from piston_server.database import models  # noqa: F401  registers the tables
    SQLModel.metadata.create_all(bind or engine)

def get_session():
    # keep attributes readable after commit, rows are handed to callers after the scope closes
    return Session(engine, expire_on_commit=False)

@contextmanager
def session_scope(session_factory=None):
    """One transaction: commit on success, roll back and raise PersistenceError on database errors."""
    session = (session_factory or get_session)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
