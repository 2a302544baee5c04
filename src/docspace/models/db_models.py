"""SQLAlchemy models for the machine-local search index.

The index is a projection of the metadata file plus document contents and
is never a source of truth, so there are no migrations: a schema change
means deleting ``index.db`` and reconciling.
"""
from sqlalchemy import Column, Integer, String, create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBDocument(Base):
    """Exact-match record for one indexed document."""
    __tablename__ = "documents"
    path = Column(String(1024), primary_key=True)
    id = Column(String(64), nullable=False, index=True)
    title = Column(String(512), nullable=False, index=True)
    mode = Column(String(32), nullable=False, index=True)
    # Comma-joined, matched with LIKE by tag lookups
    tags = Column(String, nullable=False, default="")
    created = Column(String(32), nullable=False)
    modified = Column(String(32), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Document(path='{self.path}', title='{self.title}')>"


class DBTagCount(Base):
    """Denormalized number of documents carrying a tag."""
    __tablename__ = "tags"
    name = Column(String(255), primary_key=True)
    count = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<TagCount(name='{self.name}', count={self.count})>"


def init_index_db(db_url: str):
    """Create the index engine and make sure every table exists.

    Applies the same SQLite pragmas on every connection:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - a 64MB page cache

    Safe to call on every startup.
    """
    engine = create_engine(
        db_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-64000")
        cursor.close()

    Base.metadata.create_all(engine)
    init_fts5(engine)
    return engine


def init_fts5(engine) -> None:
    """Create the FTS5 table holding tokenized document text.

    Unlike the exact-match table it stores the document body. It is kept in
    step by the index code rather than triggers, because the body is never
    stored anywhere else in the database.
    """
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
                path UNINDEXED,
                title,
                content,
                tags,
                tokenize='porter'
            )
        """))
        conn.commit()


def get_session_factory(engine):
    """Get a session factory for the index database."""
    return sessionmaker(bind=engine)
