"""
Database Connection and Session Management
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

# expire_on_commit=False - רשומות חוזרות מהשירותים אחרי שה-session נסגר
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def create_tables() -> None:
    """יצירת טבלאות חסרות בהפעלה"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
