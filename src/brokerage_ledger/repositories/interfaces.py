from abc import ABC, abstractmethod
from collections.abc import Iterable
from uuid import UUID

from brokerage_ledger.domain.assets import Asset
from brokerage_ledger.domain.reconciliation import ReconciliationRun
from brokerage_ledger.domain.sessions import ChangeSet, LedgerSession
from brokerage_ledger.domain.source_rows import SourceRow
from brokerage_ledger.domain.transactions import Transaction


class SessionRepository(ABC):
    """Session headers: name, institution, cursor, status and statistics."""

    @abstractmethod
    def add(self, session: LedgerSession) -> None:
        pass

    @abstractmethod
    def get(self, session_id: UUID) -> LedgerSession | None:
        pass

    @abstractmethod
    def get_by_name(self, name: str) -> LedgerSession | None:
        pass

    @abstractmethod
    def list_all(self) -> Iterable[LedgerSession]:
        pass

    @abstractmethod
    def update(self, session: LedgerSession) -> None:
        pass

    @abstractmethod
    def delete(self, session_id: UUID) -> None:
        pass


class SourceRowRepository(ABC):
    @abstractmethod
    def add_many(self, session_id: UUID, rows: Iterable[SourceRow]) -> None:
        pass

    @abstractmethod
    def list_by_session(self, session_id: UUID) -> list[SourceRow]:
        pass


class TransactionRepository(ABC):
    @abstractmethod
    def add(self, session_id: UUID, txn: Transaction) -> None:
        pass

    @abstractmethod
    def get(self, txn_id: UUID) -> Transaction | None:
        pass

    @abstractmethod
    def list_by_session(self, session_id: UUID) -> list[Transaction]:
        pass

    @abstractmethod
    def delete(self, txn_id: UUID) -> None:
        pass


class ExclusionRepository(ABC):
    @abstractmethod
    def add(self, session_id: UUID, row_number: int, reason: str) -> None:
        pass

    @abstractmethod
    def list_by_session(self, session_id: UUID) -> dict[int, str]:
        pass


class AssetRepository(ABC):
    @abstractmethod
    def add(self, asset: Asset) -> None:
        pass

    @abstractmethod
    def get(self, asset_id: UUID) -> Asset | None:
        pass

    @abstractmethod
    def get_by_symbol(self, symbol: str) -> Asset | None:
        pass

    @abstractmethod
    def list_all(self) -> Iterable[Asset]:
        pass


class ReconciliationRunRepository(ABC):
    """Audit trail of reconciliation runs with their discrepancies and investigations."""

    @abstractmethod
    def add(self, run: ReconciliationRun) -> None:
        pass

    @abstractmethod
    def get(self, run_id: UUID) -> ReconciliationRun | None:
        pass

    @abstractmethod
    def list_by_session(self, session_id: UUID) -> list[ReconciliationRun]:
        pass


class LedgerStore(ABC):
    """Transactional persistence for whole sessions.

    ``commit`` writes a ChangeSet together with the session header in one
    storage transaction: either all of it is stored or none of it is.
    """

    @abstractmethod
    def create_session(self, session: LedgerSession) -> None:
        pass

    @abstractmethod
    def load_session(self, session_id: UUID) -> LedgerSession | None:
        pass

    @abstractmethod
    def find_session(self, name: str) -> LedgerSession | None:
        pass

    @abstractmethod
    def list_sessions(self) -> list[LedgerSession]:
        pass

    @abstractmethod
    def commit(self, session: LedgerSession, changes: ChangeSet) -> None:
        pass

    @abstractmethod
    def save_run(self, run: ReconciliationRun) -> None:
        pass

    @abstractmethod
    def list_runs(self, session_id: UUID) -> list[ReconciliationRun]:
        pass
