from pcbcrm.models.background_job import BackgroundJob
from pcbcrm.models.base import AuditMixin, Base, UUIDPrimaryKeyMixin
from pcbcrm.models.deal import DEAL_STAGES, Deal

__all__ = [
    "Base",
    "UUIDPrimaryKeyMixin",
    "AuditMixin",
    "BackgroundJob",
    "DEAL_STAGES",
    "Deal",
]
