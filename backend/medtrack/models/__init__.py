from medtrack.models.user import User, Role, Specialty
from medtrack.models.appointment import Appointment, AppointmentStatus, ACTIVE_STATUSES
from medtrack.models.session import UserSession

__all__ = ["User", "Role", "Specialty", "Appointment", "AppointmentStatus", "ACTIVE_STATUSES",
           "UserSession"]
