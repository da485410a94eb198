import os

# Gunicorn settings for the ledger API: `gunicorn -c gunicorn.conf.py`
wsgi_app = 'wsgi:application'
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"

# Threaded workers; ledger writes lock the client row, so extra threads only queue on the DB.
worker_class = os.getenv('GUNICORN_WORKER_CLASS', 'gthread')
workers = int(os.getenv('WEB_CONCURRENCY', '2'))
threads = int(os.getenv('GUNICORN_THREADS', '4'))

timeout = int(os.getenv('TIMEOUT', '60'))
graceful_timeout = int(os.getenv('GRACEFUL_TIMEOUT', '30'))

accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info')

# With LEDGER_AUDIT_SCHEDULE_ENABLED every worker that imports the app starts its
# own scheduler; preloading imports it once in the master instead.
preload_app = os.getenv('PRELOAD_APP', '').strip().lower() in ('1', 'true', 'yes', 'y', 'on')
