from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.engine.url import make_url
from typing import Generator
import os
from dotenv import load_dotenv

def _default_env_file() -> str:
    # Prefer local SQLite config for dev/demo to avoid external DB dependency.
    for candidate in (".env.sqlite", ".env.sqlite.example", ".env"):
        if os.path.exists(candidate):
            return candidate
    return ".env"


ENV_FILE = os.getenv("ENV_FILE") or _default_env_file()
load_dotenv(ENV_FILE)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL 未配置，请在环境变量或 .env 中设置")


def use_immediate_transactions(engine: Engine) -> Engine:
    """SQLite 没有 SELECT ... FOR UPDATE：事务一开始就拿写锁，保证同一账户的扣费串行执行。"""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ARG001
        # 关掉 pysqlite 自带的隐式 BEGIN，由下面的 begin 事件接管（SAVEPOINT 也因此可用）
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(url: str, **overrides) -> Engine:
    _url = make_url(url)
    engine_kwargs: dict = {"echo": False, "pool_pre_ping": True}

    if _url.drivername.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs.update({"pool_size": 10, "max_overflow": 20})
        if _url.drivername.startswith("mysql"):
            engine_kwargs["connect_args"] = {"charset": "utf8mb4", "connect_timeout": 5}

    engine_kwargs.update(overrides)
    engine = create_engine(url, **engine_kwargs)
    if _url.drivername.startswith("sqlite"):
        use_immediate_transactions(engine)
    return engine


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """数据库会话依赖注入"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
