"""uvicorn settings shared by the sandbox services.

Run with ``uvicorn main:app --host $HOST --port $PORT`` or read these
values from a process manager; ``PORT`` is 9001 for shipping and 9002
for payments.
"""

import os

host = os.getenv("HOST", "0.0.0.0")
port = int(os.getenv("PORT", "9001"))
workers = int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1)))))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
