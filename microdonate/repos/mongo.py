# microdonate/repos/mongo.py
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from microdonate.core.states import SWEEP_TRANSITION

CONFIG_ID = "platform_config"


def oid() -> str:
    return str(ObjectId())


def _icontains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


def _cause_query(statuses=None, category=None, search=None) -> dict:
    q: dict = {}
    if statuses is not None:
        q["status"] = {"$in": list(statuses)}
    if category is not None:
        q["category"] = category
    if search:
        q["$or"] = [{"name": _icontains(search)}, {"description": _icontains(search)}]
    return q


def _audit_query(f: Optional[dict]) -> dict:
    f = f or {}
    q: dict = {}
    for key in ("event_type", "severity", "user_id"):
        if f.get(key):
            q[key] = f[key]
    if f.get("start") or f.get("end"):
        q["created_at"] = {}
        if f.get("start"):
            q["created_at"]["$gte"] = f["start"]
        if f.get("end"):
            q["created_at"]["$lte"] = f["end"]
    if f.get("search"):
        q["$or"] = [{"description": _icontains(f["search"])}, {"user_email": _icontains(f["search"])}]
    return q


class _MongoTx:
    def __init__(self, db: AsyncIOMotorDatabase, session):
        self._db = db
        self._session = session

    async def increment_cause(self, cause_id: str, amount: float, now: datetime) -> Optional[dict]:
        # $inc inside the transaction; the status guard makes a concurrent archive abort us
        return await self._db.causes.find_one_and_update(
            {"_id": cause_id, "status": "active"},
            {"$inc": {"current_amount": amount, "donor_count": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
            session=self._session,
        )

    async def insert_donation(self, doc: dict) -> dict:
        doc = dict(doc)
        doc.setdefault("_id", oid())
        await self._db.donations.insert_one(doc, session=self._session)
        return doc


class MongoRepo:
    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self._client = client
        self._db = db

    async def ping(self) -> bool:
        await self._db.command("ping")
        return True

    @asynccontextmanager
    async def transaction(self):
        async with await self._client.start_session() as session:
            async with session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            ):
                yield _MongoTx(self._db, session)

    # Users
    async def create_user(self, doc: dict) -> dict:
        doc = dict(doc)
        doc["email"] = doc["email"].lower()
        doc.setdefault("_id", oid())
        await self._db.users.insert_one(doc)
        return doc

    async def find_user(self, user_id: str) -> Optional[dict]:
        return await self._db.users.find_one({"_id": user_id})

    async def find_user_by_email(self, email: str) -> Optional[dict]:
        return await self._db.users.find_one({"email": (email or "").lower()})

    async def list_users(self) -> List[dict]:
        cur = self._db.users.find({}).sort("created_at", DESCENDING)
        return [u async for u in cur]

    async def count_users(self, role: Optional[str] = None) -> int:
        return await self._db.users.count_documents({"role": role} if role else {})

    async def update_user(self, user_id: str, fields: dict, unset: Tuple[str, ...] = ()) -> Optional[dict]:
        upd: dict = {}
        if fields:
            upd["$set"] = fields
        if unset:
            upd["$unset"] = {k: "" for k in unset}
        if not upd:
            return await self.find_user(user_id)
        return await self._db.users.find_one_and_update(
            {"_id": user_id}, upd, return_document=ReturnDocument.AFTER
        )

    async def blacklist_token(self, user_id: str, jti: str, expires_at: datetime, now: datetime) -> None:
        await self._db.users.update_one(
            {"_id": user_id}, {"$pull": {"token_blacklist": {"expires_at": {"$lte": now}}}}
        )
        await self._db.users.update_one(
            {"_id": user_id}, {"$push": {"token_blacklist": {"jti": jti, "expires_at": expires_at}}}
        )

    async def consume_backup_code(self, user_id: str, code: str) -> bool:
        res = await self._db.users.update_one(
            {
                "_id": user_id,
                "two_factor_enabled": True,
                "backup_codes": {"$elemMatch": {"code": code, "used": False}},
            },
            {"$set": {"backup_codes.$.used": True}},
        )
        return res.modified_count == 1

    async def advance_totp_step(self, user_id: str, step: int) -> bool:
        res = await self._db.users.update_one(
            {
                "_id": user_id,
                "$or": [
                    {"two_factor_last_step": {"$exists": False}},
                    {"two_factor_last_step": {"$lt": step}},
                ],
            },
            {"$set": {"two_factor_last_step": step}},
        )
        return res.modified_count == 1

    # Causes
    async def create_cause(self, doc: dict) -> dict:
        doc = dict(doc)
        doc.setdefault("_id", oid())
        await self._db.causes.insert_one(doc)
        return doc

    async def find_cause(self, cause_id: str) -> Optional[dict]:
        return await self._db.causes.find_one({"_id": cause_id})

    async def find_causes(self, cause_ids: List[str]) -> List[dict]:
        cur = self._db.causes.find({"_id": {"$in": list(cause_ids)}})
        return [c async for c in cur]

    async def list_causes(
        self,
        statuses: Optional[List[str]] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 0,
        sort_field: str = "created_at",
        descending: bool = True,
    ) -> List[dict]:
        cur = self._db.causes.find(_cause_query(statuses, category, search))
        cur = cur.sort(sort_field, DESCENDING if descending else 1).skip(skip)
        if limit:
            cur = cur.limit(limit)
        return [c async for c in cur]

    async def count_causes(self, statuses=None, category=None, search=None) -> int:
        return await self._db.causes.count_documents(_cause_query(statuses, category, search))

    async def update_cause(self, cause_id: str, fields: dict) -> Optional[dict]:
        return await self._db.causes.find_one_and_update(
            {"_id": cause_id}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )

    async def delete_cause(self, cause_id: str) -> bool:
        # a donation always bumps both counters in its transaction
        res = await self._db.causes.delete_one({"_id": cause_id, "current_amount": 0, "donor_count": 0})
        return res.deleted_count == 1

    async def distinct_categories(self) -> List[str]:
        return sorted(await self._db.causes.distinct("category"))

    async def complete_expired_causes(self, now: datetime) -> Tuple[int, int]:
        src, dst = SWEEP_TRANSITION
        res = await self._db.causes.update_many(
            {"status": src, "end_date": {"$exists": True, "$ne": None, "$lt": now}},
            {"$set": {"status": dst, "updated_at": now}},
        )
        return res.matched_count, res.modified_count

    # Donations
    async def list_donations(self, donor_id: Optional[str] = None, cause_id: Optional[str] = None) -> List[dict]:
        q = {}
        if donor_id is not None:
            q["donor_id"] = donor_id
        if cause_id is not None:
            q["cause_id"] = cause_id
        cur = self._db.donations.find(q).sort("created_at", DESCENDING)
        return [d async for d in cur]

    async def count_donations(self, cause_id: Optional[str] = None) -> int:
        return await self._db.donations.count_documents({"cause_id": cause_id} if cause_id else {})

    # Audit logs
    async def insert_audit_log(self, doc: dict) -> dict:
        doc = dict(doc)
        doc.setdefault("_id", oid())
        await self._db.audit_logs.insert_one(doc)
        return doc

    async def find_audit_log(self, log_id: str) -> Optional[dict]:
        return await self._db.audit_logs.find_one({"_id": log_id})

    async def list_audit_logs(self, filters: Optional[dict] = None, skip: int = 0, limit: int = 0) -> List[dict]:
        cur = self._db.audit_logs.find(_audit_query(filters)).sort("created_at", DESCENDING).skip(skip)
        if limit:
            cur = cur.limit(limit)
        return [log async for log in cur]

    async def count_audit_logs(self, filters: Optional[dict] = None) -> int:
        return await self._db.audit_logs.count_documents(_audit_query(filters))

    # Platform config
    async def get_platform_config(self) -> Optional[dict]:
        return await self._db.platform_config.find_one({"_id": CONFIG_ID})

    async def save_platform_config(self, doc: dict) -> dict:
        doc = {**doc, "_id": CONFIG_ID}
        await self._db.platform_config.replace_one({"_id": CONFIG_ID}, doc, upsert=True)
        return doc

    # Idempotency
    async def find_idempotent(self, key: str) -> Optional[dict]:
        return await self._db.idempotency.find_one({"_id": key})

    async def save_idempotent(self, key: str, record: dict) -> None:
        await self._db.idempotency.update_one({"_id": key}, {"$setOnInsert": record}, upsert=True)
