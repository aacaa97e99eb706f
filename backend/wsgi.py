# backend/wsgi.py
from tilebooks import create_app

app = create_app()
