# Overview: Entry point for the flask CLI (FLASK_APP=wsgi.py).

from pos_engine import create_app

app = create_app()
