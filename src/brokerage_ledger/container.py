"""Dependency injection container for Brokerage Ledger.

Services are built lazily from Settings and cached for reuse. Tests build a
Container with in-memory settings and, where needed, stub collaborators:

    settings = Settings(sqlite_path=":memory:")
    container = Container(settings=settings, categorizer=FakeCategorizer())
"""

from functools import cached_property, lru_cache

from brokerage_ledger.config import Settings, get_settings
from brokerage_ledger.domain.sessions import SessionLocks
from brokerage_ledger.domain.source_rows import RowReader
from brokerage_ledger.logging_config import get_logger
from brokerage_ledger.repositories.sqlite import (
    SQLiteAssetRepository,
    SQLiteDatabase,
    SQLiteLedgerStore,
)
from brokerage_ledger.services.asset_registry import AssetRegistry
from brokerage_ledger.services.balances import BalanceCalculator
from brokerage_ledger.services.categorization import CategorizationRunner
from brokerage_ledger.services.classifier import ActionClassifier
from brokerage_ledger.services.clients import (
    HTTPCategorizationService,
    HTTPInvestigationService,
)
from brokerage_ledger.services.delta_review import DeltaReviewEngine
from brokerage_ledger.services.grouping import SettlementGrouper
from brokerage_ledger.services.interfaces import (
    CategorizationService,
    InvestigationService,
)
from brokerage_ledger.services.ledger import LedgerService
from brokerage_ledger.services.reconciliation import ReconciliationEngine
from brokerage_ledger.services.transaction_builder import TransactionBuilder
from brokerage_ledger.services.validator import Validator

logger = get_logger(__name__)


class Container:
    """Lazily wires the database, repositories and services."""

    def __init__(
        self,
        settings: Settings | None = None,
        categorizer: CategorizationService | None = None,
        investigator: InvestigationService | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._categorizer = categorizer
        self._investigator = investigator
        logger.debug(
            "container_created",
            sqlite_path=str(self._settings.sqlite_path),
            environment=self._settings.environment.value,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @cached_property
    def database(self) -> SQLiteDatabase:
        """The SQLite database, initialized on first access."""
        path = self._settings.sqlite_path
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("initializing_sqlite_database", path=str(path))
        db = SQLiteDatabase(path)
        db.initialize()
        return db

    @cached_property
    def store(self) -> SQLiteLedgerStore:
        return SQLiteLedgerStore(self.database)

    @cached_property
    def locks(self) -> SessionLocks:
        return SessionLocks()

    @cached_property
    def reader(self) -> RowReader:
        return RowReader()

    @cached_property
    def asset_registry(self) -> AssetRegistry:
        return AssetRegistry(SQLiteAssetRepository(self.database))

    @cached_property
    def grouper(self) -> SettlementGrouper:
        return SettlementGrouper(self.reader)

    @cached_property
    def builder(self) -> TransactionBuilder:
        return TransactionBuilder(
            self.asset_registry,
            self.reader,
            ActionClassifier(),
            tolerance=self._settings.balance_tolerance,
        )

    @cached_property
    def validator(self) -> Validator:
        return Validator(self.reader, self._settings.balance_tolerance)

    @cached_property
    def calculator(self) -> BalanceCalculator:
        return BalanceCalculator(self.reader, self._settings.balance_tolerance)

    @cached_property
    def ledger_service(self) -> LedgerService:
        return LedgerService(self.store, self.grouper, self.builder, self.validator)

    @cached_property
    def review_engine(self) -> DeltaReviewEngine:
        return DeltaReviewEngine(self.builder, self.store, self.locks)

    @cached_property
    def categorizer(self) -> CategorizationService:
        if self._categorizer is not None:
            return self._categorizer
        return HTTPCategorizationService(
            base_url=self._settings.collaborator_url,
            api_key=self._settings.collaborator_api_key,
            timeout=self._settings.collaborator_timeout,
        )

    @cached_property
    def investigator(self) -> InvestigationService:
        if self._investigator is not None:
            return self._investigator
        return HTTPInvestigationService(
            base_url=self._settings.collaborator_url,
            api_key=self._settings.collaborator_api_key,
            timeout=self._settings.collaborator_timeout,
        )

    @cached_property
    def categorization_runner(self) -> CategorizationRunner:
        return CategorizationRunner(
            self.categorizer,
            self.builder,
            store=self.store,
            locks=self.locks,
            window_size=self._settings.ingestion_window_size,
            max_retries=self._settings.max_rate_limit_retries,
            retry_after_seconds=self._settings.rate_limit_wait_seconds,
        )

    @cached_property
    def reconciliation_engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.investigator,
            self.review_engine,
            calculator=self.calculator,
            validator=self.validator,
            store=self.store,
            locks=self.locks,
            reader=self.reader,
            grouper=self.grouper,
            max_iterations=self._settings.reconciliation_max_iterations,
            acceptance_threshold=self._settings.fix_acceptance_threshold,
            context_days=self._settings.investigation_context_days,
            max_context_rows=self._settings.context_max_rows,
            max_context_transactions=self._settings.context_max_transactions,
        )

    def close(self) -> None:
        """Close the database connection if it was opened."""
        if "database" in self.__dict__:
            logger.info("closing_database_connection")
            self.database.close()

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


_container: Container | None = None


@lru_cache
def get_container() -> Container:
    """Get the global container singleton built from default settings."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Close and drop the global container."""
    global _container
    if _container is not None:
        _container.close()
        _container = None
    get_container.cache_clear()
