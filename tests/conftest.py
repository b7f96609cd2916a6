import pytest

from brokerage_ledger.domain.sessions import LedgerSession
from brokerage_ledger.domain.source_rows import RowReader
from brokerage_ledger.repositories.sqlite import SQLiteDatabase, SQLiteLedgerStore
from brokerage_ledger.services.asset_registry import AssetRegistry
from brokerage_ledger.services.grouping import SettlementGrouper
from brokerage_ledger.services.transaction_builder import TransactionBuilder
from brokerage_ledger.services.validator import Validator
from factories import spy_purchase_records


@pytest.fixture
def reader() -> RowReader:
    return RowReader()


@pytest.fixture
def assets() -> AssetRegistry:
    return AssetRegistry()


@pytest.fixture
def grouper(reader: RowReader) -> SettlementGrouper:
    return SettlementGrouper(reader)


@pytest.fixture
def builder(assets: AssetRegistry, reader: RowReader) -> TransactionBuilder:
    return TransactionBuilder(assets, reader)


@pytest.fixture
def validator(reader: RowReader) -> Validator:
    return Validator(reader)


@pytest.fixture
def db() -> SQLiteDatabase:
    """Create an in-memory SQLite database for testing."""
    database = SQLiteDatabase(":memory:")
    database.initialize()
    return database


@pytest.fixture
def store(db: SQLiteDatabase) -> SQLiteLedgerStore:
    return SQLiteLedgerStore(db)


@pytest.fixture
def session() -> LedgerSession:
    return LedgerSession(name="Joint Brokerage", institution="fidelity")


@pytest.fixture
def spy_session(session: LedgerSession) -> LedgerSession:
    session.append_rows(spy_purchase_records(), source_file="activity.csv")
    return session


@pytest.fixture
def stored_session(store: SQLiteLedgerStore) -> LedgerSession:
    session = LedgerSession(name="Stored Brokerage", institution="fidelity")
    store.create_session(session)
    return session
