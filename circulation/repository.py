"""
MongoDB repository for async operations.
Owns all persistence and transactional boundaries for books, notes,
note send statistics and planned loans.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import (
    AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorCollection, AsyncIOMotorDatabase
)
from pymongo.errors import ConnectionFailure
import structlog

from .models import BookRecord, LoanState, NoteCandidate, NoteRecord

logger = structlog.get_logger(__name__)


class BookRepository:
    """
    Async MongoDB repository for the sync and digest jobs.
    Handles connection, indexing, and the reads/writes both jobs need.
    """

    def __init__(self, connection_url: str, database_name: str, use_transactions: bool = True):
        """
        Initialize repository.

        Args:
            connection_url: MongoDB connection URL
            database_name: Name of the database
            use_transactions: Wrap sync writes in a multi-document transaction
                when the server supports one (replica set or sharded cluster)
        """
        self.connection_url = connection_url
        self.database_name = database_name
        self.use_transactions = use_transactions
        self.transactions_enabled = use_transactions
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.books: Optional[AsyncIOMotorCollection] = None
        self.notes: Optional[AsyncIOMotorCollection] = None
        self.note_send_stats: Optional[AsyncIOMotorCollection] = None
        self.planned_loans: Optional[AsyncIOMotorCollection] = None

    async def connect(self) -> None:
        """Establish connection to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.connection_url)
            self.database = self.client[self.database_name]
            self.books = self.database["books"]
            self.notes = self.database["notes"]
            self.note_send_stats = self.database["note_send_stats"]
            self.planned_loans = self.database["planned_loans"]

            await self.client.admin.command('ping')
            logger.info("Successfully connected to MongoDB", database=self.database_name)

            if self.use_transactions:
                hello = await self.client.admin.command('hello')
                self.transactions_enabled = self.server_supports_transactions(hello)
                if not self.transactions_enabled:
                    logger.warning("MongoDB is standalone; sync writes will not run in a transaction")

            await self._create_indexes()

        except ConnectionFailure as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    @staticmethod
    def server_supports_transactions(hello: dict) -> bool:
        """Replica set members and mongos routers accept multi-document transactions."""
        return "setName" in hello or hello.get("msg") == "isdbgrid"

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    async def health_check(self) -> str:
        """Ping the server; returns ``healthy`` or ``unhealthy``."""
        if self.client is None:
            return "unavailable"
        try:
            await self.client.admin.command('ping')
            return "healthy"
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return "unhealthy"

    async def _create_indexes(self) -> None:
        """Create indexes for correlation keys and the common query patterns."""
        try:
            await self.books.create_index("charge_id", unique=True)
            await self.books.create_index("loan_state")
            await self.books.create_index("isbn")
            await self.books.create_index([("loan_state", 1), ("due_date", 1)])

            await self.notes.create_index("book_id")
            await self.note_send_stats.create_index("note_id", unique=True)
            await self.note_send_stats.create_index("send_count")
            await self.planned_loans.create_index("library_biblio_id", unique=True)

            logger.info("Successfully created MongoDB indexes")

        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """
        Scope a group of writes.

        Yields the session every write inside the block must receive. With
        transactions disabled, yields None and writes apply individually.
        """
        if not self.transactions_enabled:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def get_active_books(self) -> List[BookRecord]:
        """Get every book currently on loan."""
        try:
            cursor = self.books.find({"loan_state": LoanState.ON_LOAN.value})
            books = [BookRecord.from_document(doc) async for doc in cursor]
            logger.debug("Retrieved active books", count=len(books))
            return books
        except Exception as e:
            logger.error("Failed to retrieve active books", error=str(e))
            raise

    async def get_books_by_charge_ids(self, charge_ids: Iterable[str]) -> List[BookRecord]:
        """Get books, in any loan state, for the given charge ids."""
        ids = list(charge_ids)
        if not ids:
            return []
        try:
            cursor = self.books.find({"charge_id": {"$in": ids}})
            return [BookRecord.from_document(doc) async for doc in cursor]
        except Exception as e:
            logger.error("Failed to retrieve books by charge id", count=len(ids), error=str(e))
            raise

    async def upsert_book(self, record: BookRecord, session: Optional[AsyncIOMotorClientSession] = None) -> None:
        """
        Insert or update a book keyed by charge id.

        Args:
            record: Book to persist
            session: Transaction session from ``transaction()``
        """
        doc = record.to_document()
        created_at = doc.pop("created_at")
        doc["updated_at"] = datetime.utcnow()
        try:
            await self.books.update_one(
                {"charge_id": record.charge_id},
                {"$set": doc, "$setOnInsert": {"created_at": created_at}},
                upsert=True,
                session=session,
            )
            logger.debug("Upserted book", charge_id=record.charge_id, title=record.title)
        except Exception as e:
            logger.error("Failed to upsert book", charge_id=record.charge_id, error=str(e))
            raise

    async def mark_discharged(
        self,
        charge_id: str,
        discharge_date: str,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> bool:
        """
        Close a loan.

        Returns:
            bool: True if an on-loan row was transitioned
        """
        try:
            result = await self.books.update_one(
                {"charge_id": charge_id, "loan_state": LoanState.ON_LOAN.value},
                {"$set": {
                    "discharge_date": discharge_date,
                    "loan_state": LoanState.RETURNED.value,
                    "updated_at": datetime.utcnow(),
                }},
                session=session,
            )
            return result.modified_count > 0
        except Exception as e:
            logger.error("Failed to mark book discharged", charge_id=charge_id, error=str(e))
            raise

    async def delete_planned_loans_for_biblios(
        self,
        biblio_ids: Iterable[int],
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> int:
        """Remove wishlist entries for biblios that are now borrowed."""
        ids = sorted(set(biblio_ids))
        if not ids:
            return 0
        result = await self.planned_loans.delete_many({"library_biblio_id": {"$in": ids}}, session=session)
        if result.deleted_count:
            logger.info("Removed borrowed planned loans", count=result.deleted_count)
        return result.deleted_count

    async def get_note_candidates(self) -> List[NoteCandidate]:
        """Get every note joined with its book and send count."""
        pipeline = [
            {"$lookup": {"from": "books", "localField": "book_id", "foreignField": "_id", "as": "book"}},
            {"$unwind": "$book"},
            {"$lookup": {"from": "note_send_stats", "localField": "_id", "foreignField": "note_id", "as": "stats"}},
        ]
        try:
            candidates = []
            async for doc in self.notes.aggregate(pipeline):
                stats = doc.get("stats") or []
                candidates.append(NoteCandidate(
                    note=NoteRecord(
                        id=str(doc["_id"]),
                        book_id=str(doc["book_id"]),
                        page_number=doc.get("page_number"),
                        content=doc.get("content") or "",
                        created_at=doc.get("created_at"),
                        updated_at=doc.get("updated_at"),
                    ),
                    book=BookRecord.from_document(doc["book"]),
                    send_count=stats[0].get("send_count", 0) if stats else 0,
                ))
            logger.debug("Retrieved note candidates", count=len(candidates))
            return candidates
        except Exception as e:
            logger.error("Failed to retrieve note candidates", error=str(e))
            raise

    async def increment_send_count(self, note_id: str) -> None:
        """Record one confirmed broadcast of a note."""
        try:
            key = ObjectId(note_id)
        except InvalidId:
            key = note_id
        await self.note_send_stats.update_one(
            {"note_id": key},
            {"$inc": {"send_count": 1}, "$set": {"last_sent_at": datetime.utcnow()}},
            upsert=True,
        )
        logger.debug("Incremented note send count", note_id=note_id)

    async def find_due_soon_books(self, from_date: str, to_date: str) -> List[BookRecord]:
        """Get on-loan books due between two dates (inclusive), earliest first."""
        cursor = self.books.find({
            "loan_state": LoanState.ON_LOAN.value,
            "due_date": {"$gte": from_date, "$lte": to_date},
        }).sort("due_date", 1)
        return [BookRecord.from_document(doc) async for doc in cursor]
