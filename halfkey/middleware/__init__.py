from .cors import WILDCARD_CORS_HEADERS, apply_wildcard_cors, is_web_request
from .errors import register_exception_handlers

__all__ = ["WILDCARD_CORS_HEADERS", "apply_wildcard_cors", "is_web_request", "register_exception_handlers"]
