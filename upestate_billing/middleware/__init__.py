from upestate_billing.middleware.capabilities import capability_required, load_entitlement
from upestate_billing.middleware.request_id import REQUEST_ID_HEADER, init_request_id_middleware

__all__ = ["capability_required", "load_entitlement", "init_request_id_middleware", "REQUEST_ID_HEADER"]
