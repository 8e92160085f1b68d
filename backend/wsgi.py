# backend/wsgi.py
from posync import create_app

app = create_app()
