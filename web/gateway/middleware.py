"""Gateway middleware: request correlation and API body size limits.

``RequestIdMiddleware`` gives every request an identifier, reusing the
client's ``X-Request-ID`` when present. The id is stored on the request
and in ``REQUEST_ID_CTX`` so log records (via ``RequestIdFilter``) and
outbound processor calls (via ``http_adapters``) carry it without passing
it around, and is echoed on the response.

``ApiSizeLimitMiddleware`` rejects oversized bodies under ``/api/`` before
any view parses them; a checkout cart never needs more than a few KB.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))
MAX_REQUEST_ID_LEN = 128


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header to add to outgoing responses

    def process_request(self, request):
        rid = request.META.get(self.HEADER, "")[:MAX_REQUEST_ID_LEN]
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            # gthread workers reuse threads across requests
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
