"""
Audit Repository.

Writes audit trail rows to the ``audit_logs`` table.
"""

from __future__ import annotations

from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger
from cafcoop.repositories.base_repository import BaseRepository
from cafcoop.utils.audit import AuditEvent


class AuditRepository(BaseRepository):
    """Append-only access to ``audit_logs``."""

    TABLE = "audit_logs"

    def __init__(
        self,
        gateway: ProviderGateway,
        logger: StructuredLogger,
        table: str = "",
    ) -> None:
        super().__init__(gateway, logger, table)

    async def insert_audit(self, event: AuditEvent) -> None:
        """Persist *event*.  Raises the translated provider error on failure."""
        async def _insert() -> None:
            table = await self._table()
            await table.insert(event.to_row()).execute()

        await self._execute(_insert, operation_name=f"insert_audit ({self.TABLE})")
