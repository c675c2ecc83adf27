"""
数据库引擎与会话工厂

生产使用 PostgreSQL + asyncpg（payments 表依赖部分唯一索引）；
测试使用 SQLite + aiosqlite。
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """未指定驱动时补全异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}，请检查 DATABASE__URL")
    return url.set(drivername=_ASYNC_DRIVERS[url.drivername]).render_as_string(hide_password=False)


def _engine_options(async_url: str) -> dict:
    cfg = settings.database
    options = {"echo": cfg.echo, "pool_pre_ping": True}
    if not make_url(async_url).drivername.startswith("sqlite"):
        options.update(pool_size=cfg.pool_size, max_overflow=cfg.max_overflow, pool_recycle=cfg.pool_recycle)
    return options


_async_url = _build_async_url(settings.database.url)
engine = create_async_engine(_async_url, **_engine_options(_async_url))

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables():
    """开发模式下按模型建表；生产环境走 alembic 迁移"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
