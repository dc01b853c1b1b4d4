from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..realtime.roles import AGENT_ROLES


def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_users(db: Session, user_ids: Iterable[int]) -> List[models.User]:
    ids = list({int(u) for u in user_ids})
    if not ids:
        return []
    return db.query(models.User).filter(models.User.id.in_(ids)).all()


def get_active_agent_ids(db: Session) -> List[int]:
    """Ids of every active admin/agent account."""
    rows = (
        db.query(models.User.id)
        .filter(
            models.User.role.in_(list(AGENT_ROLES)),
            models.User.is_active.is_(True),
        )
        .order_by(models.User.id)
        .all()
    )
    return [int(r[0]) for r in rows]


def set_online(db: Session, user_id: int, online: bool) -> None:
    db.query(models.User).filter(models.User.id == user_id).update(
        {"is_online": online, "last_active_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.commit()
