# tracking_service/database.py
import os
from databases import Database
from dotenv import load_dotenv
from sqlalchemy import create_engine, MetaData

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tracking.db")

metadata = MetaData()


def make_database(url: str = DATABASE_URL) -> Database:
    """Async client used for every query."""
    return Database(url)


def make_engine(url: str = DATABASE_URL):
    """Sync engine, only for metadata.create_all()."""
    sync_url = url.replace("+asyncpg", "").replace("+aiosqlite", "")
    if sync_url.startswith("sqlite"):
        return create_engine(sync_url, connect_args={"check_same_thread": False})
    return create_engine(sync_url)
