# Middleware package
from .auth_middleware import AuthContext, get_current_user, get_current_user_optional, require_admin, require_operator
from .audit_log import AuditRecorder, audit_log, audit_route
