import os

wsgi_app = "config.wsgi:application"


def cpu():
    return max(1, (os.cpu_count() or 1))


# Worker processes; the shop-queue change feed is per process, so long polls
# fall back to ORDER_FEED_POLL_SECONDS for changes made in another worker
workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, cpu() * 2), 8))))

# Threads per worker: long polls and processor calls block
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "8"))

# Timeouts must outlive ORDER_FEED_MAX_WAIT_SECONDS
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
