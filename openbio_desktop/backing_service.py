"""
Embedded data service.

Local and hub instances serve the lab data API from this process. The CRUD
routes live with the data layer; this module owns the app factory, the
storage connection and schema bookkeeping the supervisor needs to bring the
service up.
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base

from openbio_desktop import __version__
from openbio_desktop.database import utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "0001_initial"

ServiceBase = declarative_base()

class SchemaMigration(ServiceBase):
    __tablename__ = "schema_migrations"

    id = Column(Integer, primary_key=True)
    version = Column(String(64), unique=True, nullable=False)
    applied_at = Column(DateTime(timezone=True), default=utcnow)


def apply_migrations(engine: Engine) -> None:
    ServiceBase.metadata.create_all(bind=engine)
    with Session(engine) as db:
        applied = db.query(SchemaMigration).filter(SchemaMigration.version == SCHEMA_VERSION).first()
        if applied is None:
            db.add(SchemaMigration(version=SCHEMA_VERSION))
            db.commit()
            logger.info("Applied schema migration %s", SCHEMA_VERSION)


def create_app(storage_locator: str, run_migrations: bool = True) -> FastAPI:
    connect_args = {"check_same_thread": False} if storage_locator.startswith("sqlite") else {}
    engine = create_engine(storage_locator, connect_args=connect_args)
    if run_migrations:
        apply_migrations(engine)

    app = FastAPI(
        title="OpenBio Data Service",
        version=__version__,
    )
    app.state.engine = engine

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": __version__}

    return app
