"""
SQLAlchemy incident store (Postgres in deployment, SQLite for local runs and tests).

Tables: policies, devices, incidents. The ledger transition is one guarded UPDATE
(... WHERE incident_id = :id AND ledger_status = 'pending'), so row-level atomicity
is enough for concurrent reconcilers.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from core.errors import DeviceNotFound, DuplicateIncident, IncidentNotFound, LedgerTransitionError, PolicyNotFound
from core.models import (
    SEVERITY_ORDER,
    CompanySummary,
    Device,
    DeviceContext,
    Incident,
    LedgerStatus,
    Location,
    Policy,
    SensorSnapshot,
    empty_ledger_counts,
    utc_now_iso,
)
from storage.base import IncidentStore, check_transition

logger = logging.getLogger("incident_pipeline.storage.sql")

metadata = MetaData()

policies = Table(
    "policies",
    metadata,
    Column("policy_ref", String(128), primary_key=True),
    Column("policy_number", String(128)),
    Column("policy_holder", String(256)),
    Column("company_ref", String(128), index=True),
    Column("company_name", String(256)),
)

devices = Table(
    "devices",
    metadata,
    Column("device_id", String(128), primary_key=True),
    Column("policy_ref", String(128), nullable=True),
    Column("last_seen_timestamp", Float, nullable=True),
    Column("registered_at", String(32)),
)

incidents = Table(
    "incidents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("incident_id", String(192), nullable=False, unique=True, index=True),
    Column("device_id", String(128), nullable=False, index=True),
    Column("policy_ref", String(128), nullable=True),
    Column("company_ref", String(128), nullable=True, index=True),
    Column("incident_type", String(32), nullable=False),
    Column("severity", String(16), nullable=False, index=True),
    Column("incident_timestamp", Float, nullable=False),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("speed_kmh", Float),
    Column("threshold", Float),
    Column("excess_speed", Float),
    Column("ledger_status", String(16), nullable=False, default=LedgerStatus.PENDING.value),
    Column("ledger_reference", String(256), nullable=True),
    Column("ledger_error", Text, nullable=True),
    Column("ledger_recorded_at", String(32), nullable=True),
    Column("kora_notified", Boolean, nullable=False, default=True),
    Column("insurance_notified", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
)


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "future": True}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, future=True)


def _row_to_incident(row) -> Incident:
    m = row._mapping
    return Incident(
        incident_id=m["incident_id"],
        device_id=m["device_id"],
        policy_ref=m["policy_ref"],
        company_ref=m["company_ref"],
        incident_type=m["incident_type"],
        severity=m["severity"],
        timestamp=m["incident_timestamp"],
        location=Location(latitude=m["latitude"], longitude=m["longitude"]),
        sensor_snapshot=SensorSnapshot(
            speed_kmh=m["speed_kmh"], threshold=m["threshold"], excess_speed=m["excess_speed"]
        ),
        ledger_status=m["ledger_status"],
        ledger_reference=m["ledger_reference"],
        ledger_error=m["ledger_error"],
        ledger_recorded_at=m["ledger_recorded_at"],
        kora_notified=bool(m["kora_notified"]),
        insurance_notified=bool(m["insurance_notified"]),
        created_at=m["created_at"],
    )


def _row_to_device(row) -> Device:
    m = row._mapping
    return Device(
        device_id=m["device_id"],
        policy_ref=m["policy_ref"],
        last_seen_timestamp=m["last_seen_timestamp"],
        registered_at=m["registered_at"],
    )


class SqlIncidentStore(IncidentStore):
    backend = "sql"

    def __init__(self, url: str = "sqlite://", engine=None):
        self.engine = engine if engine is not None else _make_engine(url)
        # SQLite allows one writer and the in-memory pool shares one connection
        self._lock = threading.RLock() if self.engine.dialect.name == "sqlite" else None
        metadata.create_all(self.engine)
        logger.info("sql store ready dialect=%s", self.engine.dialect.name)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _begin(self):
        with self._lock or nullcontext():
            with self.engine.begin() as conn:
                yield conn

    @contextmanager
    def _connect(self):
        with self._lock or nullcontext():
            with self.engine.connect() as conn:
                yield conn

    def _policy_exists(self, conn, policy_ref: str) -> bool:
        return conn.execute(select(policies.c.policy_ref).where(policies.c.policy_ref == policy_ref)).first() is not None

    def register_policy(self, policy: Policy) -> Policy:
        values = policy.to_dict()
        with self._begin() as conn:
            if self._policy_exists(conn, policy.policy_ref):
                conn.execute(update(policies).where(policies.c.policy_ref == policy.policy_ref).values(**values))
            else:
                conn.execute(policies.insert().values(**values))
        return policy

    def register_device(self, device_id: str, policy_ref: Optional[str] = None) -> Device:
        with self._begin() as conn:
            if policy_ref is not None and not self._policy_exists(conn, policy_ref):
                raise PolicyNotFound(policy_ref)
            res = conn.execute(update(devices).where(devices.c.device_id == device_id).values(policy_ref=policy_ref))
            if res.rowcount == 0:
                conn.execute(devices.insert().values(
                    device_id=device_id, policy_ref=policy_ref, registered_at=utc_now_iso(),
                ))
            row = conn.execute(select(devices).where(devices.c.device_id == device_id)).first()
        return _row_to_device(row)

    def link_device(self, device_id: str, policy_ref: Optional[str]) -> Device:
        with self._begin() as conn:
            if policy_ref is not None and not self._policy_exists(conn, policy_ref):
                raise PolicyNotFound(policy_ref)
            res = conn.execute(update(devices).where(devices.c.device_id == device_id).values(policy_ref=policy_ref))
            if res.rowcount == 0:
                raise DeviceNotFound(device_id)
            row = conn.execute(select(devices).where(devices.c.device_id == device_id)).first()
        return _row_to_device(row)

    def touch_device_liveness(self, device_id: str, timestamp: float) -> bool:
        with self._begin() as conn:
            res = conn.execute(
                update(devices).where(devices.c.device_id == device_id).values(last_seen_timestamp=timestamp)
            )
        return res.rowcount > 0

    def get_device_context(self, device_id: str) -> DeviceContext:
        stmt = (
            select(
                devices.c.device_id,
                devices.c.policy_ref,
                policies.c.policy_number,
                policies.c.policy_holder,
                policies.c.company_ref,
                policies.c.company_name,
            )
            .select_from(devices.outerjoin(policies, devices.c.policy_ref == policies.c.policy_ref))
            .where(devices.c.device_id == device_id)
        )
        with self._connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            raise DeviceNotFound(device_id)
        m = row._mapping
        return DeviceContext(
            device_id=m["device_id"],
            policy_ref=m["policy_ref"],
            policy_number=m["policy_number"],
            policy_holder=m["policy_holder"],
            company_ref=m["company_ref"],
            company_name=m["company_name"],
        )

    def create_incident(self, incident: Incident) -> Incident:
        if incident.ledger_status is not LedgerStatus.PENDING:
            raise LedgerTransitionError(f"{incident.incident_id}: incidents must be created pending")
        created_at = incident.created_at or utc_now_iso()
        try:
            with self._begin() as conn:
                conn.execute(incidents.insert().values(
                    incident_id=incident.incident_id,
                    device_id=incident.device_id,
                    policy_ref=incident.policy_ref,
                    company_ref=incident.company_ref,
                    incident_type=incident.incident_type.value,
                    severity=incident.severity.value,
                    incident_timestamp=incident.timestamp,
                    latitude=incident.location.latitude,
                    longitude=incident.location.longitude,
                    speed_kmh=incident.sensor_snapshot.speed_kmh,
                    threshold=incident.sensor_snapshot.threshold,
                    excess_speed=incident.sensor_snapshot.excess_speed,
                    ledger_status=LedgerStatus.PENDING.value,
                    kora_notified=incident.kora_notified,
                    insurance_notified=incident.insurance_notified,
                    created_at=created_at,
                ))
        except IntegrityError as e:
            raise DuplicateIncident(incident.incident_id) from e
        return self.get_incident(incident.incident_id)

    def update_ledger_status(
        self,
        incident_id: str,
        status: LedgerStatus,
        reference: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Incident:
        status = check_transition(incident_id, status, reference)
        values = {"ledger_status": status.value, "ledger_recorded_at": utc_now_iso()}
        if status is LedgerStatus.CONFIRMED:
            values["ledger_reference"] = reference
        else:
            values["ledger_error"] = error or "unknown ledger error"
        with self._begin() as conn:
            res = conn.execute(
                update(incidents)
                .where(incidents.c.incident_id == incident_id)
                .where(incidents.c.ledger_status == LedgerStatus.PENDING.value)
                .values(**values)
            )
            row = conn.execute(select(incidents).where(incidents.c.incident_id == incident_id)).first()
        if row is None:
            raise IncidentNotFound(incident_id)
        if res.rowcount == 0:
            current = row._mapping["ledger_status"]
            raise LedgerTransitionError(f"{incident_id}: cannot move ledger status {current} -> {status.value}")
        return _row_to_incident(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(select(devices).where(devices.c.device_id == device_id)).first()
        return _row_to_device(row) if row else None

    def list_devices(self) -> list[Device]:
        with self._connect() as conn:
            rows = conn.execute(select(devices).order_by(devices.c.registered_at.desc())).all()
        return [_row_to_device(r) for r in rows]

    def get_policy(self, policy_ref: str) -> Optional[Policy]:
        with self._connect() as conn:
            row = conn.execute(select(policies).where(policies.c.policy_ref == policy_ref)).first()
        return Policy(**dict(row._mapping)) if row else None

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        with self._connect() as conn:
            row = conn.execute(select(incidents).where(incidents.c.incident_id == incident_id)).first()
        return _row_to_incident(row) if row else None

    def list_incidents(
        self,
        severity: Optional[str] = None,
        company_ref: Optional[str] = None,
        device_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Incident]:
        stmt = select(incidents).order_by(incidents.c.id.desc())
        if severity:
            stmt = stmt.where(incidents.c.severity == severity)
        if company_ref:
            stmt = stmt.where(incidents.c.company_ref == company_ref)
        if device_id:
            stmt = stmt.where(incidents.c.device_id == device_id)
        if limit and limit > 0:
            stmt = stmt.limit(limit)
        with self._connect() as conn:
            rows = conn.execute(stmt).all()
        return [_row_to_incident(r) for r in rows]

    def severity_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        stmt = select(incidents.c.severity, func.count()).group_by(incidents.c.severity)
        if company_ref:
            stmt = stmt.where(incidents.c.company_ref == company_ref)
        counts = {s.value: 0 for s in SEVERITY_ORDER}
        with self._connect() as conn:
            for severity, n in conn.execute(stmt).all():
                counts[severity] = int(n)
        return counts

    def incident_counts_by_device(self) -> dict[str, tuple[int, Optional[float]]]:
        stmt = select(
            incidents.c.device_id, func.count(), func.max(incidents.c.incident_timestamp)
        ).group_by(incidents.c.device_id)
        with self._connect() as conn:
            return {device_id: (int(n), latest) for device_id, n, latest in conn.execute(stmt).all()}

    def ledger_status_breakdown(self, company_ref: Optional[str] = None) -> dict[str, int]:
        stmt = select(incidents.c.ledger_status, func.count()).group_by(incidents.c.ledger_status)
        if company_ref:
            stmt = stmt.where(incidents.c.company_ref == company_ref)
        counts = empty_ledger_counts()
        with self._connect() as conn:
            for status, n in conn.execute(stmt).all():
                counts[status] = int(n)
        return counts

    def company_transparency(self) -> list[CompanySummary]:
        policy_stmt = (
            select(policies.c.company_ref, func.max(policies.c.company_name), func.count())
            .where(policies.c.company_ref.is_not(None))
            .group_by(policies.c.company_ref)
        )
        device_stmt = (
            select(policies.c.company_ref, func.count())
            .select_from(devices.join(policies, devices.c.policy_ref == policies.c.policy_ref))
            .where(policies.c.company_ref.is_not(None))
            .group_by(policies.c.company_ref)
        )
        incident_stmt = (
            select(
                incidents.c.company_ref,
                incidents.c.ledger_status,
                func.count(),
                func.max(incidents.c.incident_timestamp),
            )
            .where(incidents.c.company_ref.is_not(None))
            .group_by(incidents.c.company_ref, incidents.c.ledger_status)
        )
        with self._connect() as conn:
            policy_rows = conn.execute(policy_stmt).all()
            device_rows = conn.execute(device_stmt).all()
            incident_rows = conn.execute(incident_stmt).all()
        companies = {
            ref: CompanySummary(company_ref=ref, company_name=name, total_policies=int(n))
            for ref, name, n in policy_rows
        }
        for ref, n in device_rows:
            if ref in companies:
                companies[ref].total_devices = int(n)
        for ref, status, n, latest in incident_rows:
            if ref in companies:
                companies[ref].add_incident(status, latest, count=int(n))
        return [companies[ref] for ref in sorted(companies)]
