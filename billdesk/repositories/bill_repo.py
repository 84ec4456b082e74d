from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
from datetime import datetime, timezone
from typing import Optional, List

from billdesk.models.bill import Bill, BillStatus
from billdesk.utils.payment_validation import ConcurrentModificationError


class BillRepository:
    """Bill database operations."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["bills"]

    async def create_bill(self, bill: Bill) -> Bill:
        """Insert a new bill document."""
        result = await self.collection.insert_one(bill.model_dump(by_alias=True, mode="python"))
        bill.id = result.inserted_id
        return bill

    async def get_bill(self, bill_id: str) -> Optional[Bill]:
        """Get a bill by id."""
        if not ObjectId.is_valid(str(bill_id)):
            return None
        doc = await self.collection.find_one({"_id": ObjectId(str(bill_id))})
        if doc:
            return Bill(**doc)
        return None

    async def list_bills(self, status: Optional[BillStatus] = None) -> List[Bill]:
        """List bills, newest first."""
        query = {}
        if status is not None:
            query["status"] = status.value
        docs = await self.collection.find(query).sort("created_at", -1).to_list(None)
        return [Bill(**doc) for doc in docs]

    async def save_bill(self, bill: Bill) -> Bill:
        """
        Write the whole bill back, guarded by its version.

        Raises ConcurrentModificationError if someone saved the bill since it
        was read.
        """
        doc = bill.model_dump(by_alias=True, mode="python")
        for field in ("_id", "version", "created_at"):
            doc.pop(field, None)
        doc["updated_at"] = datetime.now(timezone.utc)

        result = await self.collection.find_one_and_update(
            {
                "_id": bill.id,
                "version": bill.version  # Optimistic lock
            },
            {
                "$set": doc,
                "$inc": {"version": 1}
            },
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            raise ConcurrentModificationError(
                f"Bill {bill.id} was modified concurrently (version {bill.version})"
            )
        return Bill(**result)
