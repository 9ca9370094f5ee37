"""
Patient Identity Service - application entry point
Controller/Service/Repository Pattern
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from patient_identity.core.concurrency import KeyedLocks
from patient_identity.core.config import ApplicationConfig, get_config
from patient_identity.core.database import DatabaseManager
from patient_identity.core.logging_setup import configure_logging
from patient_identity.domains.audit.repositories.audit_repository import (
    AuditLogger,
    InMemoryAuditLogger,
    MongoAuditLogger
)
from patient_identity.domains.audit.services.audit_service import SafeAuditor
from patient_identity.domains.matching.calculator import MatchCalculator
from patient_identity.domains.matching.repositories.duplicate_repository import (
    InMemoryDuplicateMatchRepository,
    MongoDuplicateMatchRepository
)
from patient_identity.domains.matching.services.duplicate_service import DuplicateDetectionService
from patient_identity.domains.patient.models.patient import utcnow
from patient_identity.domains.patient.repositories.patient_repository import (
    InMemoryPatientRepository,
    MongoPatientRepository,
    PatientRepository
)
from patient_identity.domains.reconciliation.repositories.mpi_repository import (
    InMemoryMasterPatientIndexRepository,
    MongoMasterPatientIndexRepository
)
from patient_identity.domains.reconciliation.services.reconciliation_service import ReconciliationService
from patient_identity.domains.review.repositories.merge_history_repository import (
    InMemoryMergeHistoryRepository,
    MongoMergeHistoryRepository
)
from patient_identity.domains.review.services.review_service import MergeCallback, ReviewService
from patient_identity.providers import BaseExternalSystemClient, create_client

# Import domain controllers
from patient_identity.domains.matching.controllers.matching_controller import router as matching_router
from patient_identity.domains.reconciliation.controllers.reconciliation_controller import router as reconciliation_router
from patient_identity.domains.review.controllers.review_controller import router as review_router

logger = logging.getLogger(__name__)


class IdentityServiceContext:
    """
    Centralized service context for dependency injection

    Builds repositories, the external system client and the services once per
    process. Collaborators passed in explicitly take precedence over the ones
    the configuration would build.
    """

    def __init__(
        self,
        config: Optional[ApplicationConfig] = None,
        patients: Optional[PatientRepository] = None,
        client: Optional[BaseExternalSystemClient] = None,
        audit_logger: Optional[AuditLogger] = None,
        on_merge: Optional[MergeCallback] = None
    ):
        self.config = config or get_config()
        self.patients = patients
        self.client = client
        self.audit_logger = audit_logger
        self.on_merge = on_merge

        self.db_manager: Optional[DatabaseManager] = None
        self.auditor: Optional[SafeAuditor] = None
        self.duplicate_service: Optional[DuplicateDetectionService] = None
        self.reconciliation_service: Optional[ReconciliationService] = None
        self.review_service: Optional[ReviewService] = None
        self.start_time = utcnow()
        self._initialized = False

    @property
    def uses_mongo(self) -> bool:
        return "mongo" in (self.config.database.backend, self.config.audit.backend)

    async def initialize(self):
        """Initialize all connections and services"""
        if self._initialized:
            return

        logger.info("Initializing Patient Identity Service Context...")

        if self.uses_mongo:
            self.db_manager = DatabaseManager(self.config.database)
            await self.db_manager.initialize()

        await self._init_repositories()
        await self._init_client()
        self._init_services()

        self._initialized = True
        logger.info("Patient Identity Service Context initialized successfully")

    async def _init_repositories(self):
        """Pick in-memory or Mongo repositories per the configured backend"""
        storage = self.config.database.backend
        logger.info(f"Using {storage} storage backend")

        if storage == "mongo":
            self.patients = self.patients or MongoPatientRepository(self.db_manager)
            self.matches = MongoDuplicateMatchRepository(self.db_manager)
            self.mpi = MongoMasterPatientIndexRepository(self.db_manager)
            self.history = MongoMergeHistoryRepository(self.db_manager)
        else:
            self.patients = self.patients or InMemoryPatientRepository()
            self.matches = InMemoryDuplicateMatchRepository()
            self.mpi = InMemoryMasterPatientIndexRepository()
            self.history = InMemoryMergeHistoryRepository()

        if self.audit_logger is None:
            if self.config.audit.backend == "mongo":
                self.audit_logger = MongoAuditLogger(self.db_manager)
            else:
                self.audit_logger = InMemoryAuditLogger()

    async def _init_client(self):
        """Initialize the configured external system client"""
        if self.client is None:
            client_name = self.config.reconciliation.client
            logger.info(f"Initializing external system client: {client_name}")
            if client_name == "http":
                self.client = create_client(client_name, config=self.config.http)
            else:
                self.client = create_client(client_name)
        await self.client.initialize()

    def _init_services(self):
        matching = self.config.matching
        calculator = MatchCalculator(matching.weights, matching.external_weights)

        self.auditor = SafeAuditor(
            self.audit_logger,
            role=self.config.audit.default_role,
            source_context=self.config.audit.source_context
        )
        self.duplicate_service = DuplicateDetectionService(
            self.patients, self.matches, self.auditor, calculator, matching, history=self.history
        )
        self.reconciliation_service = ReconciliationService(
            self.patients,
            self.mpi,
            self.client,
            self.auditor,
            calculator=calculator,
            config=self.config.reconciliation,
            matching_config=matching,
            locks=KeyedLocks()
        )
        self.review_service = ReviewService(
            self.patients,
            self.matches,
            self.history,
            self.reconciliation_service,
            self.auditor,
            on_merge=self.on_merge
        )

    async def health(self):
        status = {
            "status": "healthy",
            "version": self.config.app_version,
            "storage": self.config.database.backend,
            "external_client": self.client.get_stats() if self.client else None,
            "audit_failures": self.auditor.failure_count if self.auditor else 0,
            "started_at": self.start_time,
            "timestamp": utcnow()
        }
        if self.db_manager is not None:
            database = await self.db_manager.health_check()
            status["database"] = database
            if database.get("status") != "healthy":
                status["status"] = "degraded"
        return status

    async def cleanup(self):
        """Cleanup all connections"""
        logger.info("Cleaning up Patient Identity Service Context...")

        if self.client is not None:
            await self.client.cleanup()

        if self.db_manager is not None:
            await self.db_manager.cleanup()

        self._initialized = False
        logger.info("Cleanup complete")


def create_app(context: Optional[IdentityServiceContext] = None) -> FastAPI:
    """Build the FastAPI application; a prepared context is used as is"""

    # FastAPI application with lifecycle management
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage service lifecycle"""
        # Startup
        service = context or IdentityServiceContext()
        configure_logging(service.config.logging)
        logger.info("Starting Patient Identity Service...")
        app.state.identity_service = service
        await service.initialize()
        logger.info("Patient Identity Service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down Patient Identity Service...")
        await service.cleanup()
        logger.info("Patient Identity Service shutdown complete")

    app = FastAPI(
        title="Patient Identity Service",
        version="1.0.0",
        description="Patient identity resolution, de-duplication and Master Patient Index",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Include domain routers
    app.include_router(matching_router)
    app.include_router(review_router)
    app.include_router(reconciliation_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Basic health check endpoint"""
        return await app.state.identity_service.health()

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "patient_identity.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
        reload=False
    )
