from app.models.bulk_operation import BulkOperation
from app.models.candidate import Candidate
from app.models.role import Role
from app.models.scheduled_call import ScheduledCall
from app.models.screening import Screening
from app.models.screening_event import ScreeningEvent
from app.models.webhook_dead_letter import WebhookDeadLetter

__all__ = [
    "Role",
    "Candidate",
    "BulkOperation",
    "Screening",
    "ScheduledCall",
    "ScreeningEvent",
    "WebhookDeadLetter",
]
