from .fastapi_integration import auth_service, get_current_user, RoleChecker, register_exception_handlers
