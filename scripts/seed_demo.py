"""Seed a MongoDB database with an admin, a donor and a few causes.

    MONGO_URI=mongodb://localhost:27017 python -m scripts.seed_demo
"""
import asyncio
from datetime import timedelta

from pymongo.errors import DuplicateKeyError

from microdonate.core.db import get_client, get_db
from microdonate.core.indexes import ensure_indexes
from microdonate.core.security import hash_password, utcnow
from microdonate.repos.mongo import MongoRepo
from microdonate.services.causes import create_cause

USERS = [
    {"email": "admin@example.com", "password": "Admin123!", "role": "admin", "first_name": "Ada", "last_name": "Admin"},
    {"email": "donor@example.com", "password": "Donor123!", "role": "donor", "first_name": "Dan", "last_name": "Donor"},
]

CAUSES = [
    {"name": "School Supplies Drive", "description": "Notebooks and pens for rural schools",
     "category": "education", "target_amount": 5000, "days": 30},
    {"name": "Clean Water Wells", "description": "Drill two community wells",
     "category": "environment", "target_amount": 12000, "days": 90},
    {"name": "Flood Relief Kits", "description": "Emergency kits for displaced families",
     "category": "disaster-relief", "target_amount": 3000, "days": None},
]


async def main():
    db = get_db()
    await ensure_indexes(db)
    repo = MongoRepo(get_client(), db)
    now = utcnow()

    admin_id = None
    for u in USERS:
        doc = {
            "email": u["email"],
            "password_hash": hash_password(u["password"]),
            "role": u["role"],
            "first_name": u["first_name"],
            "last_name": u["last_name"],
            "age": 30,
            "gender": "other",
            "verified": True,
            "profile": {},
            "token_blacklist": [],
            "two_factor_enabled": False,
            "created_at": now,
        }
        try:
            user = await repo.create_user(doc)
            print("Seeded user:", user["email"])
        except DuplicateKeyError:
            user = await repo.find_user_by_email(u["email"])
            print("User exists:", user["email"])
        if user["role"] == "admin":
            admin_id = user["_id"]

    for c in CAUSES:
        data = dict(c, end_date=now + timedelta(days=c["days"]) if c["days"] else None)
        if await repo.list_causes(search=c["name"]):
            print("Cause exists:", c["name"])
            continue
        cause = await create_cause(repo, data, admin_id)
        print("Seeded cause:", cause["name"])

    get_client().close()


if __name__ == "__main__":
    asyncio.run(main())
