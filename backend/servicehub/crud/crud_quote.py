from typing import Optional

from sqlalchemy.orm import Session

from .. import models


def has_accepted_quote(
    db: Session,
    provider_id: int,
    client_id: int,
    job_id: Optional[int] = None,
) -> bool:
    """Return True when an accepted quote links the provider and client.

    With ``job_id`` the quote must belong to that job; without it any
    accepted quote between the two counts.
    """
    query = db.query(models.Quote.id).filter(
        models.Quote.provider_id == provider_id,
        models.Quote.client_id == client_id,
        models.Quote.status == models.QuoteStatus.ACCEPTED,
    )
    if job_id is not None:
        query = query.filter(models.Quote.job_id == job_id)
    return query.first() is not None


def get_quote(db: Session, quote_id: int) -> Optional[models.Quote]:
    return db.query(models.Quote).filter(models.Quote.id == quote_id).first()
