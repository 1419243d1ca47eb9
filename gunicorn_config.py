import os

wsgi_app = 'wsgi:app'

port = int(os.environ.get('PORT', 5000))
bind = f'0.0.0.0:{port}'

# Bulletin and receipt PDFs are rendered in-request, so each worker gets a few threads
workers = int(os.environ.get('WEB_CONCURRENCY', 2))
worker_class = 'gthread'
threads = int(os.environ.get('GUNICORN_THREADS', 4))
preload_app = True

loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
accesslog = '-'
errorlog = '-'
capture_output = True

timeout = int(os.environ.get('GUNICORN_TIMEOUT', 120))
graceful_timeout = 30
keepalive = 5

# Offline sync batches can carry up to OFFLINE_BATCH_LIMIT actions in one body
limit_request_line = 4094
limit_request_field_size = 8190

max_requests = 1000
max_requests_jitter = 50


def post_fork(server, worker):
    # Connections opened by the preloaded app must not be shared across workers
    from models import db
    from wsgi import app

    with app.app_context():
        db.engine.dispose()
    server.log.info("Worker %s: database pool reset", worker.pid)
