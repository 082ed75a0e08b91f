from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


def utcnow():
    return datetime.now(timezone.utc)


Base = declarative_base()

# Database Models
class LocalLicenseCache(Base):
    __tablename__ = "local_license_cache"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(255), unique=True, nullable=False, index=True)
    tier = Column(String(20), nullable=False)
    expires_at = Column(String(64), nullable=False)  # As returned by the license server
    organization_name = Column(String(255))

    cached_at = Column(DateTime(timezone=True), default=utcnow)
    last_validated_at = Column(DateTime(timezone=True), default=utcnow)
    server_id = Column(String(255))

class LocalLicenseValidationAttempt(Base):
    __tablename__ = "local_license_validation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(255))

    # Attempt Result
    result = Column(String(20), nullable=False)  # success, failed, offline
    error_message = Column(Text)

    # Context
    server_id = Column(String(255))
    attempted_at = Column(DateTime(timezone=True), default=utcnow, index=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Open the license cache database and create its tables."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
