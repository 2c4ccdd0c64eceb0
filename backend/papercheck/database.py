"""
Database connections - MongoDB async (Motor) + sync (PyMongo for GridFS).
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import MongoClient, ASCENDING
from gridfs import GridFS

from papercheck.config import MONGO_URL, DB_NAME, logger

# Async client (used by all app queries); Motor connects lazily
client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Sync client (used by GridFS - Motor doesn't have async GridFS)
sync_client = MongoClient(MONGO_URL, connect=False)
sync_db = sync_client[DB_NAME]
fs = GridFS(sync_db)


async def ensure_indexes(database=None):
    """Unique natural keys: one evaluation and one grade row per (test, student)."""
    database = database if database is not None else db
    await database.paper_evaluations.create_index(
        [("test_id", ASCENDING), ("student_id", ASCENDING)], unique=True
    )
    await database.test_grades.create_index(
        [("test_id", ASCENDING), ("student_id", ASCENDING)], unique=True
    )
    await database.test_answers.create_index(
        [("student_id", ASCENDING), ("subject_id", ASCENDING), ("test_id", ASCENDING)]
    )
    await database.documents.create_index([("test_id", ASCENDING), ("role", ASCENDING)])
    logger.info("✅ Database indexes ensured")
