"""
Database connections - MongoDB async (Motor) + sync (PyMongo for GridFS).
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import MongoClient
from gridfs import GridFS

from papertalk.config import MONGO_URL, DB_NAME

# Async client (used by all app queries)
client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Sync client (used by GridFS - Motor doesn't have async GridFS)
sync_client = MongoClient(MONGO_URL)
sync_db = sync_client[DB_NAME]
fs = GridFS(sync_db)
