# piston_server/services/pistons.py

from    datetime                        import datetime
from    typing                          import List
from    sqlmodel                        import Session, select

from    piston_server.config            import constants
from    piston_server.database.db       import session_scope
from    piston_server.database.models   import Piston, PistonView


class PistonStore:
    """
    Per-device piston state.

    Rows are created lazily on the first command a piston receives; a missing
    row reads as "inactive, never triggered".
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def upsert(self, session: Session, device_id: str, piston_number: int, state: str, now: datetime) -> Piston:
        piston = session.exec(
            select(Piston).where(Piston.device_id == device_id, Piston.piston_number == piston_number)
        ).first()

        if piston is None:
            piston = Piston(device_id=device_id, piston_number=piston_number)

        piston.state = state
        piston.last_triggered = now
        session.add(piston)
        session.flush()
        return piston

    def list_pistons(self, device_id: str) -> List[PistonView]:
        """Always exactly one entry per piston number, in order."""
        with session_scope(self.session_factory) as session:
            rows = session.exec(select(Piston).where(Piston.device_id == device_id)).all()
            by_number = {row.piston_number: row for row in rows}

            views = []
            for number in range(constants.MIN_PISTON_NUMBER, constants.MAX_PISTON_NUMBER + 1):
                row = by_number.get(number)
                if row is None:
                    views.append(PistonView(piston_number=number, state=constants.PISTON_INACTIVE))
                else:
                    views.append(PistonView(piston_number=number, state=row.state, last_triggered=row.last_triggered))
            return views
