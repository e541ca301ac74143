from .audit_log import AuditLog
from .auth import User
