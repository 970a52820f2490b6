# piston_server/services/telemetry.py

from    datetime                        import datetime, timezone
from    typing                          import List, Optional
from    sqlmodel                        import Session, select

from    piston_server.config            import constants
from    piston_server.database.db       import session_scope
from    piston_server.database.models   import Device, Piston, TelemetryEvent, TelemetryRead


def epoch_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)                        # stored timestamps are naive UTC
    return int(moment.timestamp() * 1000)


class TelemetryRecorder:
    """Append-only history of piston state transitions. Repeated commands are never deduplicated."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def append(
        self,
        session: Session,
        device_id: str,
        piston_id: Optional[str],
        event_type: str,
        piston_number: int,
        now: datetime,
        source: str = "manual",
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            device_id   = device_id,
            piston_id   = piston_id,
            event_type  = event_type,
            payload     = {
                "piston_number":    piston_number,
                "timestamp":        epoch_millis(now),
                "source":           source,
            },
            created_at  = now,
        )
        session.add(event)
        session.flush()
        return event

    def query(
        self,
        owner_id: str,
        device_id: Optional[str] = None,
        piston_number: Optional[int] = None,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = constants.TELEMETRY_DEFAULT_LIMIT,
    ) -> List[TelemetryRead]:
        """Newest first, restricted to devices the caller owns."""
        limit = max(1, min(limit, constants.TELEMETRY_MAX_LIMIT))

        with session_scope(self.session_factory) as session:
            owned = select(Device.id).where(Device.owner_id == owner_id)
            stmt = select(TelemetryEvent).where(TelemetryEvent.device_id.in_(owned))
            if device_id:
                stmt = stmt.where(TelemetryEvent.device_id == device_id)
            if piston_number is not None:
                stmt = stmt.join(Piston, Piston.id == TelemetryEvent.piston_id).where(Piston.piston_number == piston_number)
            if event_type:
                stmt = stmt.where(TelemetryEvent.event_type == event_type)
            if start:
                stmt = stmt.where(TelemetryEvent.created_at >= start)
            if end:
                stmt = stmt.where(TelemetryEvent.created_at <= end)
            stmt = stmt.order_by(TelemetryEvent.id.desc()).limit(limit)

            return [TelemetryRead.model_validate(row) for row in session.exec(stmt).all()]
