"""
Gunicorn configuration for the oppscraper control surface
"""
import os

# Application factory
wsgi_app = "app:create_app()"

# Server socket
bind = f"0.0.0.0:{os.environ.get('PORT', 8080)}"
backlog = 2048

# One worker: the campaign scheduler thread must exist once per deployment
workers = 1
threads = int(os.environ.get('GUNICORN_THREADS', 4))
worker_class = "gthread"
timeout = 300  # drains and bulk scrapes can take minutes
keepalive = 2

# Logging
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = 'oppscraper'

# Server mechanics
preload_app = False
sendfile = True

# Graceful timeout for shutdowns
graceful_timeout = 30
