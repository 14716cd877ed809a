"""
Configuración de base de datos con SQLAlchemy 2.0 async.
El estado de las colas (contadores, tickets y bitácora) vive aquí.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from clinic_queue.config import get_settings

settings = get_settings()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Crea el engine async; SQLite no acepta opciones de pool."""
    if url.startswith("sqlite"):
        return create_async_engine(url, **kwargs)
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=10,
        pool_pre_ping=True,
        **kwargs,
    )


# ── Engine async ─────────────────────────────────────
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# ── Session factory ──────────────────────────────────
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Base declarativa ─────────────────────────────────
class Base(DeclarativeBase):
    pass

