# backend/wsgi.py
from cashoffice import create_app

app = create_app()
