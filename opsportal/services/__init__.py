"""Services - lifecycle rules over the identity store, applied after authorization."""

from opsportal.services.clients import ClientService
from opsportal.services.projects import ProjectService
from opsportal.services.reports import ReportService
from opsportal.services.uploads import UploadLimiter
from opsportal.services.users import UserService

__all__ = [
    "ClientService",
    "ProjectService",
    "ReportService",
    "UploadLimiter",
    "UserService",
]
