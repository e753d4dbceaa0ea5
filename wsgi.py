"""
TraceWell WSGI entry point.

Usage:
    gunicorn wsgi:app
    FLASK_APP=wsgi flask create-db        # fresh development database
    FLASK_APP=wsgi flask db migrate -m "description"
    FLASK_APP=wsgi flask db upgrade
"""

from app import create_app

app = create_app()
