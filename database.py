# --- models and engine for the import / label services ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    JSON, String, Text, Integer, DateTime, Boolean,
    func, Index, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from typing import Any, Dict, Optional
import logging, os, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg takes 'ssl' via connect_args, not 'sslmode' in the URL
    require_ssl = "sslmode=require" in DATABASE_URL or "sslmode=verify-full" in DATABASE_URL
    for param in ("sslmode=require", "sslmode=verify-full"):
        DATABASE_URL = DATABASE_URL.replace(f"?{param}", "").replace(f"&{param}", "")

    connect_args: Dict[str, Any] = {
        "server_settings": {"application_name": "sales_import_service"},
        "command_timeout": 60,
        "timeout": 30,
    }
    if require_ssl:
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=20,
        connect_args=connect_args,
    )
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "sales_import")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_timeout=15,
        )
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    if "@" in url and "://" in url:
        head, tail = url.split("://", 1)
        creds, hostpart = tail.split("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{head}://{user}:******@{hostpart}"
        return url
    if url.startswith("sqlite"):
        return url
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class ImportJob(Base):
    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    platform: Mapped[str] = mapped_column(String, nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)

    # Snapshot of the source used to start the run; resume re-reads it
    stage_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mapping: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    source_label: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    filtered_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    existing_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lease_owner: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','completed','error','cancelled')",
            name="ck_import_jobs_status",
        ),
    )


class ImportLock(Base):
    """Single-row lease guarding the one-import-at-a-time rule."""
    __tablename__ = "import_locks"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="completed")
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class IntegrationTemplate(Base):
    __tablename__ = "integration_templates"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    mapping: Mapped[dict] = mapped_column(JSONType, nullable=False)
    stage_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class LabelTemplate(Base):
    __tablename__ = "label_templates"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    mapping: Mapped[dict] = mapped_column(JSONType, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class LabelOrder(Base):
    __tablename__ = "label_orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    batch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    transaction_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    phone: Mapped[str] = mapped_column(String, nullable=False, default="")
    tax_id: Mapped[str] = mapped_column(String, nullable=False, default="")
    product_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    purchase_date: Mapped[str] = mapped_column(String, nullable=False, default="")
    zip: Mapped[str] = mapped_column(String, nullable=False, default="")
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    number: Mapped[str] = mapped_column(String, nullable=False, default="")
    complement: Mapped[str] = mapped_column(Text, nullable=False, default="")
    neighborhood: Mapped[str] = mapped_column(Text, nullable=False, default="")
    city: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[str] = mapped_column(String, nullable=False, default="")

    service_code: Mapped[str] = mapped_column(String, nullable=False)
    envios_total: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    envios_realizados: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    etiquetas: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_merged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merged_transactions: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    merged_product_names: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    merged_into: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("envios_realizados <= envios_total", name="ck_label_orders_envios"),
        CheckConstraint(
            "status IN ('pending','partial','generated','error')",
            name="ck_label_orders_status",
        ),
    )


class LabelRecord(Base):
    __tablename__ = "label_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id: Mapped[str] = mapped_column(String, nullable=False)
    etiqueta: Mapped[str] = mapped_column(String, nullable=False)
    envio_numero: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    envios_total: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    service_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    destinatario: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_import_jobs_status', ImportJob.status)
Index('ix_import_jobs_created_at', ImportJob.created_at)
Index('ix_label_records_transaction', LabelRecord.transaction_id)
Index('ix_label_orders_merged_into', LabelOrder.merged_into)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
IMPORT_LOCK_KEY = "import-csv"


def import_lock_seed(key: str = IMPORT_LOCK_KEY):
    """INSERT of the idle lease row; a no-op when the row already exists."""
    insert = pg_insert if engine.dialect.name == "postgresql" else sqlite_insert
    return (
        insert(ImportLock)
        .values(key=key, owner=None, status="completed")
        .on_conflict_do_nothing(index_elements=["key"])
    )


async def init_db():
    """Ensure tables and the import lease row exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(import_lock_seed())
    logger.info("DB init complete (tables ensured).")

async def check_db_health() -> Dict[str, Any]:
    start = datetime.now()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    latency_ms = int((datetime.now() - start).total_seconds() * 1000)
    return {"status": "healthy", "latency_ms": latency_ms}
