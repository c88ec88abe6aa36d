from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import quote_plus, unquote, urlparse, urlunparse

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mitigation.config import Settings
from mitigation.core.errors import StorageUnavailable
from mitigation.core.logger import logger

Base = declarative_base()


def encode_database_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url

    encoded_password = quote_plus(unquote(parsed.password), safe='')
    netloc = f"{parsed.username or ''}:{encoded_password}@{parsed.hostname or ''}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse((
        parsed.scheme,
        netloc,
        parsed.path or '',
        parsed.params or '',
        parsed.query or '',
        parsed.fragment or ''
    ))


def create_database_engine(database_url: str, timeout_seconds: float) -> Engine:
    if database_url.startswith("sqlite"):
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        return create_engine(
            database_url,
            poolclass=StaticPool if in_memory else None,
            connect_args={
                "check_same_thread": False,
                "timeout": timeout_seconds
            },
            echo=False
        )

    timeout_ms = int(timeout_seconds * 1000)
    return create_engine(
        encode_database_url(database_url),
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(round(timeout_seconds))),
            "client_encoding": "utf8",
            "options": f"-c statement_timeout={timeout_ms}"
        },
        echo=False
    )


class Database:
    def __init__(self, settings: Settings, engine: Optional[Engine] = None):
        self.timeout_seconds = settings.store_timeout_seconds
        self.engine = engine or create_database_engine(settings.database_url, self.timeout_seconds)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)

    def create_all(self) -> None:
        # models must be imported for their tables to register on Base
        import mitigation.models  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageUnavailable(str(e)) from e

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            if self.engine.dialect.name == "postgresql":
                timeout_ms = int((timeout or self.timeout_seconds) * 1000)
                db.execute(
                    text("SELECT set_config('statement_timeout', :value, true)"),
                    {"value": str(timeout_ms)}
                )
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("store_operation_failed", error=str(e))
            raise StorageUnavailable(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def scope(self, db: Optional[Session] = None, timeout: Optional[float] = None) -> Iterator[Session]:
        """Reuse the caller's session when given one, otherwise open a new one."""
        if db is not None:
            yield db
        else:
            with self.session(timeout) as own:
                yield own
