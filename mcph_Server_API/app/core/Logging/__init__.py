from .log_context import log_context, new_request_id, ensure_request_id, mask_secrets, client_ip

__all__ = ["log_context", "new_request_id", "ensure_request_id", "mask_secrets", "client_ip"]
