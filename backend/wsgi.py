# backend/wsgi.py
from mercado import create_app

app = create_app()
