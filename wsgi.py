import os

from app import app

# Gunicorn entry point: `gunicorn -c gunicorn.conf.py wsgi:application`
application = app

if __name__ == "__main__":
    port = int(os.environ.get('PORT', 10000))
    app.run(host='0.0.0.0', port=port, debug=False)
