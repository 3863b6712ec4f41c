import logging

from sqlalchemy.orm import Session

from database.repositories import (
    AlertRepository,
    ResultRepository,
    WebhookRepository,
    NotificationRepository,
    IntegrationRepository,
)

logger = logging.getLogger(__name__)


class AlertStore:
    """
    All repositories needed by alert dispatch and webhook delivery, sharing
    one Session so a unit of work commits or rolls back as a whole.
    """

    def __init__(self, db: Session):
        self.db = db
        self.alerts = AlertRepository(db)
        self.results = ResultRepository(db)
        self.webhooks = WebhookRepository(db)
        self.notifications = NotificationRepository(db)
        self.integrations = IntegrationRepository(db)

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
