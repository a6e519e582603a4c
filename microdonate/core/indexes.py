# microdonate/core/indexes.py
from pymongo import ASCENDING, DESCENDING


async def ensure_indexes(db):
    # Users & causes
    await db.users.create_index("email", unique=True)
    await db.causes.create_index("name", unique=True)
    await db.causes.create_index([("status", ASCENDING), ("end_date", ASCENDING)])
    await db.causes.create_index([("category", ASCENDING)])
    # Donations lookup
    await db.donations.create_index([("donor_id", ASCENDING), ("created_at", DESCENDING)])
    await db.donations.create_index([("cause_id", ASCENDING)])
    await db.donations.create_index("payment_id")
    # Audit log views are reverse chronological
    await db.audit_logs.create_index([("created_at", DESCENDING)])
    await db.audit_logs.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.audit_logs.create_index([("event_type", ASCENDING), ("created_at", DESCENDING)])
    await db.audit_logs.create_index([("severity", ASCENDING), ("created_at", DESCENDING)])
