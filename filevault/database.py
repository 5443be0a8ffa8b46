"""Database setup and configuration using SQLModel"""

import os
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from filevault.config import settings
from filevault.models.file_record import CompressionStatus, FileRecord, FileTag  # noqa: F401  (registers tables)
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseService:
    """Database service for managing the SQLModel database"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database_url
        self.engine: Optional[Engine] = None

    def initialize(self):
        """Initialize database connection and create tables"""
        try:
            database_url = self.database_url

            if database_url.startswith("file:"):
                # Prisma-style URL: file:./data/filevault.db
                path = database_url.replace("file:", "", 1)
                database_url = f"sqlite:///{path}"

            if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
                path = database_url.replace("sqlite:///", "", 1)
                db_dir = os.path.dirname(path)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    logger.debug(f"Created database directory: {db_dir}")

            logger.debug(f"Connecting to database: {database_url.split('/')[-1]}")

            if database_url.startswith("sqlite"):
                self.engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    echo=False,
                    pool_pre_ping=True,
                )
                if ":memory:" not in database_url:
                    with self.engine.connect() as conn:
                        # WAL lets readers proceed while the pipeline writes statuses
                        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
                        conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
                        conn.commit()
            else:
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    pool_pre_ping=True,
                    pool_size=5,
                    max_overflow=10,
                    pool_recycle=3600,
                )

            SQLModel.metadata.create_all(self.engine)
            logger.debug("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def get_session(self) -> Session:
        """Get database session"""
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return Session(self.engine, expire_on_commit=False)

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            with self.get_session() as session:
                session.exec(select(1)).first()
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def get_metrics(self) -> Dict[str, Any]:
        """Get database metrics"""
        try:
            with self.get_session() as session:
                total = session.exec(select(func.count()).select_from(FileRecord)).one()
                processing = session.exec(
                    select(func.count())
                    .select_from(FileRecord)
                    .where(FileRecord.compression_status == CompressionStatus.PROCESSING.value)
                ).one()
                return {
                    "database_file_count": total,
                    "database_processing_count": processing,
                }
        except Exception as e:
            logger.error(f"Failed to get database metrics: {e}")
            return {}

    def close(self):
        """Close database connection"""
        if self.engine:
            self.engine.dispose()
            logger.debug("Database connection closed")


# Global database instance
database = DatabaseService()
