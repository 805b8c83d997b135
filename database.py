"""
データベース接続設定
SQLAlchemy を使用して SQLite（開発）/ PostgreSQL（本番）に接続する
"""

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL, RESET_DB

logger = logging.getLogger(__name__)

# SQLiteの場合、DBファイルを削除してリセット
if RESET_DB and "sqlite" in DATABASE_URL:
    db_path = DATABASE_URL.replace("sqlite:///", "")
    if os.path.exists(db_path):
        os.remove(db_path)
        logger.warning("DB削除: %s", db_path)

# SQLite の場合は check_same_thread を無効化（FastAPIのマルチスレッド対応）
connect_args = {"check_same_thread": False} if "sqlite" in DATABASE_URL else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
