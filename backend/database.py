# backend/database.py

from motor.motor_asyncio import AsyncIOMotorClient

from settings import MONGO_URL, DB_NAME

# MongoDB connection
client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]


def get_db():
    return db


async def ensure_indexes(database) -> None:
    await database.orders.create_index("order_id", unique=True)
    await database.orders.create_index([("user_id", 1), ("created_at", -1)])
    await database.payment_events.create_index([("order_id", 1), ("edge", 1)], unique=True)
    await database.notifications.create_index([("user_id", 1), ("created_at", -1)])
    await database.carts.create_index("user_id", unique=True)
    await database.products.create_index("id", unique=True)
