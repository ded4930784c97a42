"""Middleware that assigns and propagates request context.

Every incoming request gets a request identifier: the client's
``X-Request-Id`` header when present, a new UUIDv4 otherwise. The id is
stored on ``request.request_id`` and in ``REQUEST_ID_CTX`` so code that
has no access to the request (HTTP adapters, log filters) can read it.
The shopper's ``X-Session-Id`` header is exposed the same way through
``SESSION_ID_CTX`` for log correlation across a checkout.

Responses carry the request id back in ``X-Request-ID``.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
SESSION_ID_CTX = contextvars.ContextVar("session_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Sets the per-request id and session id context variables.

    Attributes:
        HEADER (str): Incoming request id header, in ``request.META`` casing.
        SESSION_HEADER (str): Incoming shopper session header.
        RESPONSE_HEADER (str): Header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    SESSION_HEADER = "HTTP_X_SESSION_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._ctx_tokens = (
            REQUEST_ID_CTX.set(rid),
            SESSION_ID_CTX.set(request.META.get(self.SESSION_HEADER) or "-"),
        )

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        tokens = getattr(request, "_ctx_tokens", None)
        if tokens:
            # worker threads are reused across requests
            REQUEST_ID_CTX.reset(tokens[0])
            SESSION_ID_CTX.reset(tokens[1])
            request._ctx_tokens = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Rejects API requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
