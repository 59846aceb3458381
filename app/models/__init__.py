# Database models
from app.models.database import (
    Company,
    Employee,
    Absenteeism,
    ApiCredential,
)
from app.models.sync_run import SyncRun, SyncPayload

__all__ = [
    "Company",
    "Employee",
    "Absenteeism",
    "ApiCredential",
    "SyncRun",
    "SyncPayload",
]
