"""
Nightbase 伝票サーバー 設定
環境変数（.env）から読み込む
"""

import os
from dotenv import load_dotenv

# .env ファイルから環境変数を読み込む
load_dotenv()

# 認証
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# データベース
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./nightbase.db")

# PostgreSQLの場合はpostgresql://をpostgresql+psycopg2://に変換
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)
elif DATABASE_URL.startswith("postgresql://") and "+psycopg2" not in DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg2://", 1)

# DBリセットフラグ（環境変数で制御）
RESET_DB = os.getenv("RESET_DB", "false").lower() == "true"

# 伝票の既定値
DEFAULT_SERVICE_CHARGE_RATE = 20  # サービス料（%）
DEFAULT_TAX_RATE = 10  # 消費税（%）
DEFAULT_ROUNDING_UNIT = 10  # 丸め単位（円）
DEFAULT_NOMINATION_DURATION_MINUTES = 60  # 指名セット時間
DEFAULT_COMPANION_DURATION_MINUTES = 30  # 場内セット時間

# クライアント（ApiBackend）の接続先
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "15"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
