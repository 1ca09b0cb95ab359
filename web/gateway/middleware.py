"""Edge middleware: request correlation and API body size limit.

``RequestIdMiddleware`` reuses the incoming ``X-Request-ID`` (a UUID is
generated otherwise), stores it on the request and in ``REQUEST_ID_CTX`` so
log records and outbound HTTP calls can carry it, and echoes it back on the
response. The ContextVar is restored once the response is built so a worker
thread never leaks an id into the next request.

``ApiSizeLimitMiddleware`` rejects ``/api/`` bodies larger than
``API_MAX_BYTES`` with 413 before any view runs.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", None) or REQUEST_ID_CTX.get()
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
            return JsonResponse({"success": False, "error": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
