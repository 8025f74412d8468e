from .cors import CORSMiddleware
from .middleware import SecurityHeadersMiddleware
from .request_id_middleware import RequestIDMiddleware
from .timeout_middleware import TimeoutMiddleware

__all__ = ["CORSMiddleware", "RequestIDMiddleware", "SecurityHeadersMiddleware", "TimeoutMiddleware"]
