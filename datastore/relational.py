"""SQL-backed reading store built on SQLAlchemy Core."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    Double,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    make_url,
    select,
)
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from datastore.base import DEFAULT_RETENTION_DAYS, present, retention_cutoff
from exceptions import StoreUnavailableError, UnknownSourceError
from models.records import Deployment, Reading, now_ms

logger = logging.getLogger(__name__)

_BACKEND = "relational"

metadata = MetaData()

buoy_data = Table(
    "buoy_data",
    metadata,
    Column(
        "id",
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    ),
    Column("buoy_id", Integer, nullable=False),
    Column("measurement_type", String(50), nullable=False),
    Column("measurement_value", Double, nullable=False),
    Column("timestamp_ms", BigInteger, nullable=False),
    Index("idx_buoy_timestamp", "buoy_id", "timestamp_ms"),
    Index("idx_buoy_type", "buoy_id", "measurement_type", "timestamp_ms"),
)

buoy_deployments = Table(
    "buoy_deployments",
    metadata,
    Column("buoy_id", Integer, primary_key=True, autoincrement=False),
    Column("lat", Double, nullable=False),
    Column("lon", Double, nullable=False),
    Column("allowed_radius_meters", Double, nullable=False),
    Column("deployed_at", BigInteger, nullable=False),
)

_READING_COLUMNS = (
    buoy_data.c.buoy_id,
    buoy_data.c.measurement_type,
    buoy_data.c.measurement_value,
    buoy_data.c.timestamp_ms,
)


def _row_to_reading(row: Row[Any]) -> Reading:
    return Reading(
        source_id=row.buoy_id,
        measurement_type=row.measurement_type,
        value=row.measurement_value,
        timestamp=row.timestamp_ms,
    )


class RelationalStore:
    """Row-per-reading store with a global retention sweep on every write."""

    def __init__(
        self,
        engine: Engine,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.engine = engine
        self.retention_days = retention_days
        self._clock = clock
        try:
            metadata.create_all(engine)
        except SQLAlchemyError as exc:
            logger.error("Failed to connect to database: %s", exc, extra={"backend": _BACKEND})
            raise StoreUnavailableError(
                "Database initialization failed", backend=_BACKEND
            ) from exc
        logger.info("Connected to database %s", engine.url.render_as_string(hide_password=True))

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RelationalStore":
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        return cls(create_engine(parsed, pool_pre_ping=True), **kwargs)

    def update(self, readings: Iterable[Optional[Reading]]) -> None:
        rows = [
            {
                "buoy_id": reading.source_id,
                "measurement_type": reading.measurement_type,
                "measurement_value": reading.value,
                "timestamp_ms": reading.timestamp,
            }
            for reading in present(readings)
        ]
        cutoff = retention_cutoff(self._clock(), self.retention_days)

        try:
            with self.engine.begin() as conn:
                if rows:
                    conn.execute(buoy_data.insert(), rows)

                # Sweeps every source, not only the ones just written.
                result = conn.execute(
                    buoy_data.delete().where(buoy_data.c.timestamp_ms < cutoff)
                )
        except SQLAlchemyError as exc:
            logger.error("Failed to update database: %s", exc, extra={"backend": _BACKEND})
            raise StoreUnavailableError("Database update failed", backend=_BACKEND) from exc

        if result.rowcount and result.rowcount > 0:
            logger.info(
                "Deleted old records",
                extra={"backend": _BACKEND, "deleted_count": result.rowcount},
            )
        logger.debug("Stored buoy readings", extra={"backend": _BACKEND, "batch_size": len(rows)})

    def get_history(self, source_id: int) -> list[Reading]:
        cutoff = retention_cutoff(self._clock(), self.retention_days)
        stmt = (
            select(*_READING_COLUMNS)
            .where(buoy_data.c.buoy_id == source_id, buoy_data.c.timestamp_ms >= cutoff)
            .order_by(buoy_data.c.timestamp_ms.asc(), buoy_data.c.id.asc())
        )

        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to retrieve history: %s",
                exc,
                extra={"backend": _BACKEND, "source_id": source_id},
            )
            raise StoreUnavailableError("Database query failed", backend=_BACKEND) from exc

        if not rows:
            raise UnknownSourceError(source_id)
        return [_row_to_reading(row) for row in rows]

    def get_latest(
        self, source_id: int, measurement_type: Optional[str] = None
    ) -> Optional[Reading]:
        cutoff = retention_cutoff(self._clock(), self.retention_days)
        in_window = (buoy_data.c.buoy_id == source_id, buoy_data.c.timestamp_ms >= cutoff)

        count_stmt = select(func.count()).select_from(buoy_data).where(*in_window)
        latest_stmt = select(*_READING_COLUMNS).where(*in_window)
        if measurement_type is not None:
            latest_stmt = latest_stmt.where(buoy_data.c.measurement_type == measurement_type)
        latest_stmt = latest_stmt.order_by(
            buoy_data.c.timestamp_ms.desc(), buoy_data.c.id.desc()
        ).limit(1)

        try:
            with self.engine.connect() as conn:
                known = conn.execute(count_stmt).scalar_one()
                row = conn.execute(latest_stmt).first() if known else None
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to retrieve latest reading: %s",
                exc,
                extra={
                    "backend": _BACKEND,
                    "source_id": source_id,
                    "measurement_type": measurement_type,
                },
            )
            raise StoreUnavailableError("Database query failed", backend=_BACKEND) from exc

        if not known:
            raise UnknownSourceError(source_id)
        return _row_to_reading(row) if row is not None else None

    def save_deployment(self, deployment: Deployment) -> None:
        values = {
            "lat": deployment.lat,
            "lon": deployment.lon,
            "allowed_radius_meters": deployment.allowed_radius_meters,
            "deployed_at": deployment.deployed_at,
        }
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    buoy_deployments.update()
                    .where(buoy_deployments.c.buoy_id == deployment.buoy_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(
                        buoy_deployments.insert().values(buoy_id=deployment.buoy_id, **values)
                    )
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to save deployment: %s",
                exc,
                extra={"backend": _BACKEND, "source_id": deployment.buoy_id},
            )
            raise StoreUnavailableError("Database update failed", backend=_BACKEND) from exc

    def get_deployment(self, buoy_id: int) -> Optional[Deployment]:
        stmt = select(buoy_deployments).where(buoy_deployments.c.buoy_id == buoy_id)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to retrieve deployment: %s",
                exc,
                extra={"backend": _BACKEND, "source_id": buoy_id},
            )
            raise StoreUnavailableError("Database query failed", backend=_BACKEND) from exc

        if row is None:
            return None
        return Deployment(
            buoy_id=row.buoy_id,
            lat=row.lat,
            lon=row.lon,
            allowed_radius_meters=row.allowed_radius_meters,
            deployed_at=row.deployed_at,
        )

    def close(self) -> None:
        self.engine.dispose()
