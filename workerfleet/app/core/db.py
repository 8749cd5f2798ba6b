from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from workerfleet.app.core.config import settings

connect_args = {}
database_url = settings.get_database_url()
if database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

def enable_sqlite_foreign_keys(target_engine):
    # SQLite ignores ON DELETE CASCADE unless the pragma is set per connection
    @event.listens_for(target_engine, "connect")
    def _set_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_engine(database_url, echo=settings.DB_ECHO, connect_args=connect_args)
if database_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)

def create_db_and_tables():
    # Tables must be registered on the metadata before create_all
    import workerfleet.app.models.account  # noqa: F401
    import workerfleet.app.models.audit  # noqa: F401
    import workerfleet.app.models.job  # noqa: F401

    SQLModel.metadata.create_all(engine)

def get_session():
    with Session(engine) as session:
        yield session
