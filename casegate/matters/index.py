"""
Matter Index — read-only view of matters, parties and counterparties.

Intake owns these tables; the core only reads them. ``get`` is deliberately
not tenant-scoped so callers can tell a cross-tenant reference (denied) from
a missing one (not found).
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from casegate.domain.schema import Matter, as_utc, normalize_name
from casegate.ledger.database import Database
from casegate.ledger.models import CounterpartyDB, MatterDB, PartyDB


class MatterIndex(Protocol):
    def get(self, matter_id: str) -> Matter | None: ...

    def matters_with_party(self, tenant_id: str, name: str, exclude: str) -> list[Matter]: ...

    def matters_with_counterparty(
        self, tenant_id: str, name: str, exclude: str, limit: int
    ) -> list[Matter]: ...

    def other_matters(self, tenant_id: str, exclude: str) -> list[Matter]: ...


class SqlMatterIndex:
    """MatterIndex over the intake tables."""

    def __init__(self, database: Database) -> None:
        self.SessionLocal = database.SessionLocal

    def get(self, matter_id: str) -> Matter | None:
        with self.SessionLocal() as session:
            row = session.get(MatterDB, matter_id)
            return self._hydrate(session, [row])[0] if row is not None else None

    def matters_with_party(self, tenant_id: str, name: str, exclude: str) -> list[Matter]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(MatterDB)
                .join(PartyDB, PartyDB.matter_id == MatterDB.id)
                .where(
                    MatterDB.tenant_id == tenant_id,
                    MatterDB.id != exclude,
                    PartyDB.normalized_name == normalize_name(name),
                )
                .order_by(MatterDB.opened_at.asc(), MatterDB.number.asc())
                .distinct()
            ).scalars().all()
            return self._hydrate(session, rows)

    def matters_with_counterparty(
        self, tenant_id: str, name: str, exclude: str, limit: int
    ) -> list[Matter]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(MatterDB)
                .join(CounterpartyDB, CounterpartyDB.matter_id == MatterDB.id)
                .where(
                    MatterDB.tenant_id == tenant_id,
                    MatterDB.id != exclude,
                    CounterpartyDB.normalized_name == normalize_name(name),
                )
                .order_by(MatterDB.opened_at.asc(), MatterDB.number.asc())
                .distinct()
                .limit(limit)
            ).scalars().all()
            return self._hydrate(session, rows)

    def other_matters(self, tenant_id: str, exclude: str) -> list[Matter]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(MatterDB)
                .where(MatterDB.tenant_id == tenant_id, MatterDB.id != exclude)
                .order_by(MatterDB.opened_at.asc(), MatterDB.number.asc())
            ).scalars().all()
            return self._hydrate(session, rows)

    @staticmethod
    def _hydrate(session: Session, rows) -> list[Matter]:
        ids = [r.id for r in rows]
        if not ids:
            return []
        parties: dict[str, list[str]] = {i: [] for i in ids}
        counterparties: dict[str, list[str]] = {i: [] for i in ids}
        for matter_id, name in session.execute(
            select(PartyDB.matter_id, PartyDB.name)
            .where(PartyDB.matter_id.in_(ids))
            .order_by(PartyDB.id)
        ):
            parties[matter_id].append(name)
        for matter_id, name in session.execute(
            select(CounterpartyDB.matter_id, CounterpartyDB.name)
            .where(CounterpartyDB.matter_id.in_(ids))
            .order_by(CounterpartyDB.id)
        ):
            counterparties[matter_id].append(name)

        return [
            Matter(
                id=r.id,
                tenant_id=r.tenant_id,
                number=r.number,
                status=r.status,
                assigned_professional_id=r.assigned_professional_id,
                assigned_staff_id=r.assigned_staff_id,
                client_id=r.client_id,
                opened_at=as_utc(r.opened_at),
                parties=parties[r.id],
                counterparties=counterparties[r.id],
            )
            for r in rows
        ]
