"""
MongoDB access for the identity service: connection manager and repository base
"""

import logging
from typing import Optional, Dict, Any, List

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ReturnDocument

from .config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Owns the motor client and the identity collections.
    Repositories reach their collection through get_collection().
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or get_config().database
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None
        self._collections: Dict[str, AsyncIOMotorCollection] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Connect, verify with a ping, then prepare collections and indexes"""
        if self._initialized:
            return

        logger.info(f"Initializing database connection for {self.config.name}")

        try:
            self._client = AsyncIOMotorClient(
                self.config.uri,
                maxPoolSize=self.config.max_pool_size,
                minPoolSize=self.config.min_pool_size,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
                tz_aware=True
            )

            # Test connection
            await self._client.admin.command('ping')
            logger.info(f"Connected to MongoDB database {self.config.name}")

            self._database = self._client[self.config.name]
            await self._setup_collections()

            self._initialized = True
            logger.info("Database manager ready")

        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            raise

    async def _setup_collections(self) -> None:
        """Map logical collection names onto the configured ones"""
        self._collections = {
            "patients": self._database[self.config.patients_collection],
            "duplicate_matches": self._database[self.config.duplicate_matches_collection],
            "master_patient_index": self._database[self.config.master_patient_index_collection],
            "merge_history": self._database[self.config.merge_history_collection],
            "patient_audit": self._database[self.config.patient_audit_collection],
        }
        await self._create_indexes()

    async def _create_indexes(self) -> None:
        """Unique keys for ids plus lookup indexes used by the repositories"""
        try:
            patients = self._collections["patients"]
            await patients.create_index([("id", 1)], unique=True)
            await patients.create_index([("last_name", 1), ("first_name", 1)])

            matches = self._collections["duplicate_matches"]
            await matches.create_index([("match_id", 1)], unique=True)
            await matches.create_index([("status", 1)])
            await matches.create_index([("patient1.id", 1)])
            await matches.create_index([("patient2.id", 1)])

            mpi = self._collections["master_patient_index"]
            await mpi.create_index([("patient_id", 1)], unique=True)
            await mpi.create_index([
                ("external_identifiers.system_id", 1),
                ("external_identifiers.external_id", 1)
            ])

            history = self._collections["merge_history"]
            await history.create_index([("merged_into", 1)])
            await history.create_index([("merged_from", 1)])
            await history.create_index([("merge_date", -1)])

            audit = self._collections["patient_audit"]
            await audit.create_index([("timestamp", -1)])
            await audit.create_index([("actor", 1)])

            logger.info("Identity collection indexes ready")

        except Exception as e:
            logger.error(f"Index creation failed: {e}")
            raise

    async def cleanup(self) -> None:
        """Close the motor client"""
        if self._client:
            self._client.close()
            self._initialized = False
            logger.info("MongoDB client closed")

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        """Collection by logical name, falling back to a raw collection name"""
        if not self._initialized:
            raise RuntimeError("DatabaseManager.initialize() has not been awaited")

        if name in self._collections:
            return self._collections[name]
        return self._database[name]

    async def health_check(self) -> Dict[str, Any]:
        """Ping the server and report status for /health"""
        try:
            if not self._initialized:
                return {"status": "error", "message": "not connected"}

            await self._client.admin.command('ping')
            return {"status": "healthy", "database": self.config.name}

        except Exception as e:
            logger.error(f"MongoDB ping failed: {e}")
            return {"status": "unhealthy", "error": str(e)}


class BaseRepository:
    """
    Thin async wrapper over one Mongo collection.
    Errors are logged with the collection name and re-raised.
    """

    def __init__(self, db_manager: DatabaseManager, collection_name: str):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @property
    def collection(self) -> AsyncIOMotorCollection:
        """Motor collection backing this repository"""
        return self.db_manager.get_collection(self.collection_name)

    async def find_one(
        self,
        filter_dict: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """First document matching the filter, or None"""
        try:
            return await self.collection.find_one(filter_dict, projection)
        except Exception as e:
            logger.error(f"{self.collection_name}.find_one failed: {e}")
            raise

    async def find_many(
        self,
        filter_dict: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Documents matching the filter, with optional sort and paging"""
        try:
            cursor = self.collection.find(filter_dict, projection)

            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)

            return await cursor.to_list(length=limit)
        except Exception as e:
            logger.error(f"{self.collection_name}.find_many failed: {e}")
            raise

    async def insert_one(self, document: Dict[str, Any]) -> str:
        """Insert a document and return its ObjectId as a string"""
        try:
            result = await self.collection.insert_one(document)
            return str(result.inserted_id)
        except Exception as e:
            logger.error(f"{self.collection_name}.insert_one failed: {e}")
            raise

    async def replace_one(
        self,
        filter_dict: Dict[str, Any],
        document: Dict[str, Any],
        upsert: bool = False
    ) -> bool:
        """Replace a single document"""
        try:
            result = await self.collection.replace_one(filter_dict, document, upsert=upsert)
            return result.modified_count > 0 or (upsert and result.upserted_id is not None)
        except Exception as e:
            logger.error(f"{self.collection_name}.replace_one failed: {e}")
            raise

    async def find_one_and_replace(
        self,
        filter_dict: Dict[str, Any],
        document: Dict[str, Any],
        upsert: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Atomically replace a document matching the filter, returning the new one"""
        try:
            return await self.collection.find_one_and_replace(
                filter_dict,
                document,
                upsert=upsert,
                return_document=ReturnDocument.AFTER
            )
        except Exception as e:
            logger.error(f"{self.collection_name}.find_one_and_replace failed: {e}")
            raise
