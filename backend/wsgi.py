# backend/wsgi.py
from vendoa import create_app

app = create_app()
